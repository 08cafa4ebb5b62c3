"""SonarQube web API client: issues, quality gate and coverage."""

from __future__ import annotations

import base64
from dataclasses import dataclass

from sonar_gitlab.findings import Finding
from sonar_gitlab.transport import Deadline, HostError, HttpOpen, JsonTransport, UnauthorizedError

ISSUES_PAGE_SIZE = 500

QUALITY_GATE_PASSED = "passed"
QUALITY_GATE_FAILED = "failed"
QUALITY_GATE_WARNING = "warning"

_GATE_STATUS = {
    "OK": QUALITY_GATE_PASSED,
    "ERROR": QUALITY_GATE_FAILED,
    "WARN": QUALITY_GATE_WARNING,
}


@dataclass(frozen=True)
class QualityReport:
    quality_gate_status: str = QUALITY_GATE_WARNING
    overall_coverage: float = 0.0
    new_code_coverage: float = 0.0


def map_quality_gate_status(status: object) -> str:
    """Unknown upstream statuses map to warning."""
    return _GATE_STATUS.get(str(status or "").strip().upper(), QUALITY_GATE_WARNING)


def extract_file_path(component: object) -> str:
    """`project:src/app.py` -> `src/app.py`. A bare project key stays as-is."""
    text = str(component or "").strip()
    if not text:
        return ""
    idx = text.find(":")
    if 0 <= idx < len(text) - 1:
        return text[idx + 1:]
    return text


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


def _normalize_project_key(project_key: str) -> str:
    key = (project_key or "").strip()
    if not key:
        raise ValueError("project key cannot be empty")
    return key


def _parse_coverage(metric: str, value: object) -> float:
    text = str(value or "").strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError as exc:
        raise HostError(f"failed to parse SonarQube metric {metric} value {text!r}: {exc}", host="SonarQube") from exc


class SonarClient:
    """Client for one SonarQube server."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        deadline: Deadline | None = None,
        opener: HttpOpen | None = None,
    ) -> None:
        # SonarQube takes the token as the basic-auth user with an empty password.
        credentials = base64.b64encode(f"{token.strip()}:".encode()).decode("ascii")
        self._transport = JsonTransport(
            host="SonarQube",
            base_url=base_url,
            headers={"Authorization": f"Basic {credentials}"},
            deadline=deadline,
            opener=opener,
        )

    def validate_authentication(self) -> None:
        endpoint = "/api/authentication/validate"
        payload, _ = self._transport.request("GET", endpoint)
        if not isinstance(payload, dict) or not payload.get("valid"):
            raise UnauthorizedError(
                f"unauthorized SonarQube API request: token rejected by {endpoint}",
                host="SonarQube",
                endpoint=endpoint,
            )

    def fetch_project_issues(self, project_key: str) -> list[Finding]:
        """All issues of the project, following `paging` until exhausted.

        Issues without a file or a positive line are returned unbound
        (`file_path=""`, `line=0`).
        """
        key = _normalize_project_key(project_key)
        findings: list[Finding] = []
        page = 1
        while True:
            payload, _ = self._transport.request(
                "GET",
                "/api/issues/search",
                query={"componentKeys": key, "p": page, "ps": ISSUES_PAGE_SIZE},
            )
            payload = payload if isinstance(payload, dict) else {}
            for issue in payload.get("issues") or []:
                if not isinstance(issue, dict):
                    continue
                path = extract_file_path(issue.get("component"))
                line = _as_int(issue.get("line"))
                bound = bool(path) and line > 0 and path != key
                findings.append(
                    Finding(
                        key=str(issue.get("key") or ""),
                        rule=str(issue.get("rule") or ""),
                        severity=str(issue.get("severity") or ""),
                        message=str(issue.get("message") or ""),
                        file_path=path if bound else "",
                        line=line if bound else 0,
                        issue_type=str(issue.get("type") or ""),
                    )
                )

            paging = payload.get("paging") or {}
            page_size = _as_int(paging.get("pageSize"))
            total = _as_int(paging.get("total"))
            if page_size <= 0 or page * page_size >= total:
                break
            page += 1
        return findings

    def fetch_quality_report(self, project_key: str) -> QualityReport:
        key = _normalize_project_key(project_key)
        payload, _ = self._transport.request(
            "GET", "/api/qualitygates/project_status", query={"projectKey": key}
        )
        project_status = payload.get("projectStatus") if isinstance(payload, dict) else None
        status = project_status.get("status") if isinstance(project_status, dict) else None

        payload, _ = self._transport.request(
            "GET",
            "/api/measures/component",
            query={"component": key, "metricKeys": "coverage,new_coverage"},
        )
        component = payload.get("component") if isinstance(payload, dict) else None
        measures = component.get("measures") if isinstance(component, dict) else None

        found: dict[str, float] = {}
        for measure in measures or []:
            if not isinstance(measure, dict):
                continue
            metric = measure.get("metric")
            if metric in ("coverage", "new_coverage"):
                found[metric] = _parse_coverage(metric, measure.get("value"))

        if "coverage" not in found or "new_coverage" not in found:
            raise HostError(
                "missing SonarQube coverage metrics: "
                f"coverage={'coverage' in found} new_coverage={'new_coverage' in found}",
                host="SonarQube",
                endpoint="/api/measures/component",
            )

        return QualityReport(
            quality_gate_status=map_quality_gate_status(status),
            overall_coverage=found["coverage"],
            new_code_coverage=found["new_coverage"],
        )
