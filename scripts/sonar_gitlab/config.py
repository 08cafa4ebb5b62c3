"""Run configuration: CLI flags over environment variables over a YAML file.

Everything is validated before any network call is made.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.parse import urlparse

import yaml

from sonar_gitlab.severity import allowed_severities, is_valid_severity, normalize_severity
from sonar_gitlab.transport import DEFAULT_RUN_TIMEOUT

Getenv = Callable[[str], "str | None"]

PROG = "sonar-gitlab-commenter"
CONFIG_ENV = "SONAR_GITLAB_COMMENTER_CONFIG"

# field -> (flag, env var)
_SOURCES = {
    "sonar_url": ("--sonar-url", "SONAR_HOST_URL"),
    "sonar_token": ("--sonar-token", "SONAR_TOKEN"),
    "sonar_project_key": ("--sonar-project-key", "SONAR_PROJECT_KEY"),
    "gitlab_url": ("--gitlab-url", "GITLAB_URL"),
    "gitlab_token": ("--gitlab-token", "GITLAB_TOKEN"),
    "project_id": ("--project-id", "CI_PROJECT_ID"),
    "mr_iid": ("--mr-iid", "CI_MERGE_REQUEST_IID"),
}

_FILE_KEYS = set(_SOURCES) | {"severity_threshold", "dry_run", "logs", "timeout"}


class ConfigError(RuntimeError):
    """Invalid or missing configuration."""


class HelpRequested(Exception):
    """`--help` was passed; `message` holds the usage text."""

    def __init__(self, message: str):
        super().__init__("help requested")
        self.message = message


@dataclass(frozen=True)
class Config:
    """Validated settings for one run."""
    sonar_url: str
    sonar_token: str
    sonar_project_key: str
    gitlab_url: str
    gitlab_token: str
    project_id: int
    mr_iid: int
    severity_threshold: str = ""
    dry_run: bool = False
    logs: bool = False
    timeout: float = DEFAULT_RUN_TIMEOUT


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):  # type: ignore[override]
        raise ConfigError(f"invalid CLI arguments: {message}")


def build_parser() -> argparse.ArgumentParser:
    p = _Parser(
        prog=PROG,
        add_help=False,
        description=(
            "Publish SonarQube issues for a GitLab merge request: one diff note per issue "
            "on a changed line, plus a single summary note that is updated on every run."
        ),
        epilog=(
            "Flags override environment variables, which override the YAML config file. "
            f"The config file path may also be set with {CONFIG_ENV}; its keys use the "
            "flag names with underscores (e.g. sonar_url, severity_threshold, dry_run)."
        ),
    )
    p.add_argument("-h", "--help", action="store_true", help="Show this help and exit.")
    p.add_argument("--sonar-url", help="SonarQube server URL (env: SONAR_HOST_URL)")
    p.add_argument("--sonar-token", help="SonarQube access token (env: SONAR_TOKEN)")
    p.add_argument("--sonar-project-key", help="SonarQube project key (env: SONAR_PROJECT_KEY)")
    p.add_argument(
        "--severity-threshold",
        help=f"Minimum SonarQube issue severity to include ({', '.join(allowed_severities())})",
    )
    p.add_argument("--gitlab-url", help="GitLab server URL (env: GITLAB_URL)")
    p.add_argument("--gitlab-token", help="GitLab access token (env: GITLAB_TOKEN)")
    p.add_argument("--project-id", help="GitLab project ID (env: CI_PROJECT_ID)")
    p.add_argument("--mr-iid", help="GitLab merge request IID (env: CI_MERGE_REQUEST_IID)")
    p.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Read everything, print what would be posted, change nothing in GitLab.",
    )
    p.add_argument(
        "--logs",
        "--verbose",
        dest="logs",
        action="store_true",
        default=None,
        help="Print fetched issues and diff mapping details.",
    )
    p.add_argument(
        "--timeout",
        help=f"Overall run timeout in seconds (default: {DEFAULT_RUN_TIMEOUT:g})",
    )
    p.add_argument("--config", help=f"Path to a YAML config file (env: {CONFIG_ENV})")
    return p


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"missing config file: {path}") from None
    except OSError as e:
        raise ConfigError(f"unable to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected mapping")
    unknown = sorted(str(k) for k in raw if k not in _FILE_KEYS)
    if unknown:
        raise ConfigError(f"{path}: unknown keys: {', '.join(unknown)}")
    return raw


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in {"1", "true", "yes", "on"}


def _positive_int(value: str, what: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        raise ConfigError(f"invalid {what} {value!r}: expected positive integer")
    return parsed


def _require_url(value: str, what: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"invalid {what} URL {value!r}: expected http(s)://host")


def _missing(values: Mapping[str, str], fields: tuple[str, ...]) -> list[str]:
    return [_SOURCES[f][0].lstrip("-") for f in fields if not values[f]]


def parse_config(argv: list[str], getenv: Getenv) -> Config:
    """Parse and validate.

    Raises:
        HelpRequested: `-h`/`--help` was given.
        ConfigError: anything is missing or invalid.
    """
    parser = build_parser()
    # Help wins over any other argument, valid or not.
    if any(arg in ("-h", "--help") for arg in argv):
        raise HelpRequested(parser.format_help())
    args = parser.parse_args(argv)

    config_path = _text(args.config) or _text(getenv(CONFIG_ENV))
    file_values = _load_yaml(Path(config_path)) if config_path else {}

    values: dict[str, str] = {}
    for name, (_flag_name, env) in _SOURCES.items():
        from_flag = getattr(args, name)
        if from_flag is not None:
            values[name] = _text(from_flag)
        elif _text(getenv(env)):
            values[name] = _text(getenv(env))
        else:
            values[name] = _text(file_values.get(name))

    threshold = normalize_severity(
        args.severity_threshold if args.severity_threshold is not None else file_values.get("severity_threshold")
    )
    dry_run = args.dry_run if args.dry_run is not None else _flag(file_values.get("dry_run"))
    logs = args.logs if args.logs is not None else _flag(file_values.get("logs"))
    raw_timeout = _text(args.timeout if args.timeout is not None else file_values.get("timeout"))

    missing = _missing(values, ("sonar_url", "sonar_token", "sonar_project_key"))
    if missing:
        raise ConfigError(
            f"missing required SonarQube configuration: {', '.join(missing)} "
            "(set env vars SONAR_HOST_URL/SONAR_TOKEN/SONAR_PROJECT_KEY or flags "
            "--sonar-url/--sonar-token/--sonar-project-key)"
        )
    missing = _missing(values, ("gitlab_url", "gitlab_token"))
    if missing:
        raise ConfigError(
            f"missing required GitLab configuration: {', '.join(missing)} "
            "(set env vars GITLAB_URL/GITLAB_TOKEN or flags --gitlab-url/--gitlab-token)"
        )
    missing = _missing(values, ("project_id", "mr_iid"))
    if missing:
        raise ConfigError(
            f"missing required GitLab merge request context: {', '.join(missing)} "
            "(set env vars CI_PROJECT_ID/CI_MERGE_REQUEST_IID or flags --project-id/--mr-iid)"
        )

    _require_url(values["sonar_url"], "SonarQube")
    _require_url(values["gitlab_url"], "GitLab")
    project_id = _positive_int(values["project_id"], "project ID")
    mr_iid = _positive_int(values["mr_iid"], "merge request IID")

    if threshold and not is_valid_severity(threshold):
        raise ConfigError(
            f"invalid value for --severity-threshold: {threshold!r} "
            f"(allowed: {', '.join(allowed_severities())})"
        )

    timeout = DEFAULT_RUN_TIMEOUT
    if raw_timeout:
        try:
            timeout = float(raw_timeout)
        except ValueError:
            timeout = 0.0
        if timeout <= 0:
            raise ConfigError(f"invalid value for --timeout: {raw_timeout!r} (expected positive number of seconds)")

    return Config(
        sonar_url=values["sonar_url"],
        sonar_token=values["sonar_token"],
        sonar_project_key=values["sonar_project_key"],
        gitlab_url=values["gitlab_url"],
        gitlab_token=values["gitlab_token"],
        project_id=project_id,
        mr_iid=mr_iid,
        severity_threshold=threshold,
        dry_run=bool(dry_run),
        logs=bool(logs),
        timeout=timeout,
    )
