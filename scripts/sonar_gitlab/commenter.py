"""Publish SonarQube issues to a GitLab merge request.

Sequence of one run:
1. Load the merge request diff refs and changes, build the diff line index.
2. Fetch SonarQube issues and keep the ones visible in the diff, at or above
   the severity threshold.
3. Fetch quality gate and coverage.
4. Resolve discussions from earlier runs, post one diff note per issue
   (demoting unanchorable ones to the summary), create or update the
   summary note.

Exit codes:
    0  Success (or --help).
    1  Upstream failure (authentication, HTTP, timeout).
    2  Invalid configuration.
"""

from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, TextIO

from sonar_gitlab.config import Config, ConfigError, Getenv, HelpRequested, parse_config
from sonar_gitlab.diff_lines import DiffLineIndex, build_diff_line_index
from sonar_gitlab.findings import Finding, Resolved, compact, filter_by_diff, split_by_line_binding
from sonar_gitlab.gitlab import Discussion, GitLabClient
from sonar_gitlab.markdown import render_summary
from sonar_gitlab.reconcile import (
    SUMMARY_UPDATED,
    ReconcileError,
    post_inline_findings,
    resolve_previous_discussions,
    upsert_summary_note,
)
from sonar_gitlab.severity import filter_by_severity
from sonar_gitlab.sonar import SonarClient
from sonar_gitlab.transport import Deadline, HostError, HttpOpen, UnauthorizedError

# Files with more visible lines than this are logged as a count only.
MAX_LOGGED_LINES = 10


class RunError(RuntimeError):
    """A run step failed; the message names the step."""


def fail(stream: TextIO, message: str, code: int = 1) -> int:
    """Print an `Error:` line to stream and return the exit code."""
    print(f"Error: {message}", file=stream)
    return code


def warn(stream: TextIO, message: str) -> None:
    """Print a `warning:` line to stream."""
    print(f"warning: {message}", file=stream)


def _host_error(exc: BaseException) -> HostError | None:
    seen: BaseException | None = exc
    while seen is not None:
        if isinstance(seen, HostError):
            return seen
        seen = seen.__cause__
    return None


@contextmanager
def step(action: str) -> Iterator[None]:
    """Convert failures inside a step into a RunError naming the step."""
    try:
        yield
    except (HostError, ReconcileError, ValueError) as exc:
        cause = _host_error(exc)
        if isinstance(cause, UnauthorizedError):
            raise RunError(f"failed to authenticate in {cause.host} API: {exc}") from exc
        raise RunError(f"failed to {action}: {exc}") from exc


class Printer:
    """Progress output; detail lines only when verbose."""

    def __init__(self, out: TextIO, verbose: bool) -> None:
        self.out = out
        self.verbose = verbose

    def say(self, message: str) -> None:
        print(message, file=self.out)

    def detail(self, message: str) -> None:
        if self.verbose:
            self.say(message)


def log_diff_index(printer: Printer, index: DiffLineIndex) -> None:
    files, lines = index.stats()
    printer.detail(f"Loaded MR diff lines: files={files} lines={lines}")
    for path, file_lines in index.lines.items():
        identity = index.paths[path]
        if len(file_lines) > MAX_LOGGED_LINES:
            printer.detail(
                f"  File: {path} (old={identity.old_path}, new={identity.new_path}) - {len(file_lines)} visible lines"
            )
        else:
            numbers = " ".join(str(n) for n in sorted(file_lines))
            printer.detail(f"  File: {path} (old={identity.old_path}, new={identity.new_path}) - lines: [{numbers}]")


def log_findings(printer: Printer, findings: list[Finding]) -> None:
    printer.detail(f"Fetched SonarQube issues: {len(findings)}")
    for idx, f in enumerate(findings, start=1):
        printer.detail(
            f'Sonar issue #{idx}: key="{compact(f.key)}" severity="{compact(f.severity)}" '
            f'type="{compact(f.issue_type)}" rule="{compact(f.rule)}" file="{compact(f.file_path)}" '
            f'line={f.line} message="{compact(f.message)}"'
        )


def publish(
    cfg: Config,
    printer: Printer,
    errors: TextIO,
    *,
    opener: HttpOpen | None = None,
    clock: Callable[[], float] | None = None,
) -> None:
    """Run every step for one merge request.

    Raises:
        RunError: any step failed.
    """
    deadline = Deadline(cfg.timeout, clock=clock)
    gitlab = GitLabClient(cfg.gitlab_url, cfg.gitlab_token, deadline=deadline, opener=opener)
    sonar = SonarClient(cfg.sonar_url, cfg.sonar_token, deadline=deadline, opener=opener)

    with step("connect to GitLab API"):
        merge_request = gitlab.get_merge_request(cfg.project_id, cfg.mr_iid)
    with step("retrieve merge request diff from GitLab API"):
        changes = gitlab.list_merge_request_changes(cfg.project_id, cfg.mr_iid)

    index = build_diff_line_index(changes)
    for path in index.duplicate_paths:
        warn(errors, f"several changed files map to {path!r}; using the last one")
    log_diff_index(printer, index)

    with step("connect to SonarQube API"):
        sonar.validate_authentication()
    with step("retrieve SonarQube issues"):
        fetched = sonar.fetch_project_issues(cfg.sonar_project_key)
    log_findings(printer, fetched)

    issues = filter_by_diff(fetched, index)
    printer.detail(f"Issues matching MR diff lines: {len(issues)}")
    issues = filter_by_severity(issues, cfg.severity_threshold)
    inline, project_level = split_by_line_binding(issues)

    with step("retrieve SonarQube quality gate and coverage"):
        report = sonar.fetch_quality_report(cfg.sonar_project_key)

    if cfg.dry_run:
        printer.say("Dry-run enabled: skipping GitLab discussion resolution and comment publishing")

    def _on_resolve(discussion: Discussion) -> None:
        if cfg.dry_run:
            printer.say(f"Would resolve previous SonarQube discussion {discussion.id}")

    def _on_post(finding: Finding, resolution: Resolved) -> None:
        if cfg.dry_run:
            coords = resolution.coordinates
            printer.say(
                f"Would post inline discussion for issue {finding.key!r} at {resolution.identity.new_path} "
                f"(old_line={coords.old_line}, new_line={coords.new_line}, type={resolution.kind.value})"
            )

    def _on_demote(finding: Finding, reason: str) -> None:
        printer.detail(
            f"Skipped inline discussion for issue {finding.key!r}: {reason} "
            f"(path={finding.file_path!r}, line={finding.line}); added to summary"
        )

    with step("resolve previous SonarQube discussions"):
        resolved = resolve_previous_discussions(
            gitlab, cfg.project_id, cfg.mr_iid, dry_run=cfg.dry_run, on_resolve=_on_resolve
        )

    with step("post inline SonarQube discussions"):
        outcome = post_inline_findings(
            gitlab,
            cfg.project_id,
            cfg.mr_iid,
            inline,
            index,
            merge_request.diff_refs,
            dry_run=cfg.dry_run,
            on_demote=_on_demote,
            on_post=_on_post,
        )
    project_level.extend(outcome.demoted)

    body = render_summary(report, issues, project_level)
    with step("post SonarQube summary note"):
        summary_action = upsert_summary_note(gitlab, cfg.project_id, cfg.mr_iid, body, dry_run=cfg.dry_run)

    if cfg.dry_run:
        printer.say(f"Would {'update' if summary_action == SUMMARY_UPDATED else 'create'} summary note:")
        printer.say(body)
        published = 0
    else:
        published = outcome.posted + (0 if summary_action == SUMMARY_UPDATED else 1)

    verb = "Would resolve" if cfg.dry_run else "Resolved"
    printer.say(f"Action log: found {len(issues)} issues, published {published} comments")
    printer.say(f"{verb} {resolved} previous SonarQube discussions in merge request {cfg.mr_iid}")
    verb = "Would post" if cfg.dry_run else "Posted"
    printer.say(f"{verb} {outcome.posted} inline SonarQube discussions to merge request {cfg.mr_iid}")
    action = summary_action.capitalize()
    if cfg.dry_run:
        action = f"Would have {summary_action}"
    printer.say(f"{action} summary SonarQube note in merge request {cfg.mr_iid}")
    printer.say(
        f"Quality gate: {report.quality_gate_status}, coverage: {report.overall_coverage:.2f}%, "
        f"new code coverage: {report.new_code_coverage:.2f}%"
    )
    printer.say(f"Resolved GitLab merge request: project_id={cfg.project_id}, mr_iid={cfg.mr_iid}")


def run_with(
    argv: list[str],
    getenv: Getenv,
    stdout: TextIO,
    *,
    stderr: TextIO | None = None,
    opener: HttpOpen | None = None,
    clock: Callable[[], float] | None = None,
) -> int:
    """Run with explicit arguments, environment and streams; return exit code."""
    errors = stderr if stderr is not None else sys.stderr
    try:
        cfg = parse_config(argv, getenv)
    except HelpRequested as exc:
        stdout.write(exc.message)
        return 0
    except ConfigError as exc:
        return fail(errors, str(exc), code=2)

    try:
        publish(cfg, Printer(stdout, cfg.logs), errors, opener=opener, clock=clock)
    except RunError as exc:
        return fail(errors, str(exc))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run with process argv, environment and stdout."""
    return run_with(sys.argv[1:] if argv is None else argv, os.environ.get, sys.stdout)


if __name__ == "__main__":
    raise SystemExit(main())
