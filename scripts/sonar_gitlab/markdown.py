"""Markdown rendering for SonarQube merge request notes.

Keep surface area small: one inline issue body and one summary body.
"""

from __future__ import annotations

from typing import Iterable

from sonar_gitlab.findings import Finding
from sonar_gitlab.markers import KIND_INLINE, KIND_SUMMARY, SUMMARY_HEADING, wrap
from sonar_gitlab.severity import Severity, normalize_severity, summary_order
from sonar_gitlab.sonar import QualityReport

PROJECT_LEVEL_HEADING = "**SonarQube issues without line binding**"

_QUALITY_GATE_LABEL = {
    "passed": "✅ **passed**",
    "failed": "❌ **failed**",
}


def quality_gate_label(status: str | None) -> str:
    """Emoji label for a mapped gate status; unknown values read as warning."""
    text = str(status or "").strip().lower()
    return _QUALITY_GATE_LABEL.get(text, "⚠️ **warning**")


def render_inline_comment(finding: Finding) -> str:
    """Diff note body for one finding, wrapped in the inline envelope."""
    lines = [
        "**SonarQube issue**",
        f"- Severity: `{finding.severity.strip()}`",
        f"- Type: `{finding.issue_type.strip()}`",
        f"- Message: {finding.message.strip()}",
        f"- Rule key: `{finding.rule.strip()}`",
    ]
    return wrap("\n".join(lines), KIND_INLINE)


def count_by_severity(findings: Iterable[Finding]) -> tuple[dict[str, int], int]:
    """Return (count per known severity, count of unrecognized severities)."""
    counts = {name: 0 for name in summary_order()}
    unknown = 0
    for finding in findings:
        level = Severity.parse(finding.severity)
        if level is None:
            unknown += 1
            continue
        counts[level.name] += 1
    return counts, unknown


def render_summary(
    report: QualityReport,
    findings: list[Finding],
    project_level: list[Finding],
) -> str:
    """Render the single summary note body."""
    counts, unknown = count_by_severity(findings)

    lines = [
        SUMMARY_HEADING,
        f"- Quality gate: {quality_gate_label(report.quality_gate_status)}",
        f"- Overall coverage: {report.overall_coverage:.2f}%",
        f"- New code coverage: {report.new_code_coverage:.2f}%",
        f"- Total issues: {len(findings)}",
        "",
        "**Issues by severity**",
    ]
    lines.extend(f"- {name}: {counts[name]}" for name in summary_order())
    if unknown:
        lines.append(f"- UNKNOWN: {unknown}")

    if project_level:
        lines.append("")
        lines.append(PROJECT_LEVEL_HEADING)
        for idx, finding in enumerate(project_level, start=1):
            lines.append(
                f"{idx}. [{normalize_severity(finding.severity)}][{finding.issue_type.strip()}] "
                f"{finding.message.strip()} (rule `{finding.rule.strip()}`)"
            )

    return wrap("\n".join(lines).rstrip("\n"), KIND_SUMMARY)
