"""Idempotent reconciliation of tool-authored merge request annotations.

Each run first resolves the open discussions left by previous runs, then
posts fresh diff notes, then creates or updates the single summary note.
Authorship is detected only through the marker embedded in note bodies, so
human discussions are never touched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol

from sonar_gitlab.diff_lines import DiffLineIndex
from sonar_gitlab.findings import Finding, NotFound, PathOnly, Resolved, resolve_finding
from sonar_gitlab.gitlab import DiffRefs, Discussion, InvalidInlinePositionError, Note
from sonar_gitlab.markdown import render_inline_comment
from sonar_gitlab.markers import KIND_SUMMARY, SUMMARY_HEADING, envelope_kind, has_marker

SUMMARY_CREATED = "created"
SUMMARY_UPDATED = "updated"


class ReviewHost(Protocol):
    def list_discussions(self, project_id: int, mr_iid: int) -> list[Discussion]:
        ...

    def resolve_discussion(self, project_id: int, mr_iid: int, discussion_id: str) -> None:
        ...

    def create_inline_discussion(
        self,
        project_id: int,
        mr_iid: int,
        *,
        body: str,
        old_path: str,
        new_path: str,
        old_line: int,
        new_line: int,
        diff_refs: DiffRefs,
    ) -> None:
        ...

    def list_notes(self, project_id: int, mr_iid: int) -> list[Note]:
        ...

    def create_note(self, project_id: int, mr_iid: int, body: str) -> None:
        ...

    def update_note(self, project_id: int, mr_iid: int, note_id: int, body: str) -> None:
        ...


class ReconcileError(RuntimeError):
    """A write aborted the run. `completed` counts the writes that succeeded."""

    def __init__(self, message: str, *, completed: int = 0):
        super().__init__(message)
        self.completed = completed


@dataclass
class InlineOutcome:
    posted: int = 0
    demoted: list[Finding] = field(default_factory=list)


DemoteHook = Callable[[Finding, str], None]


def discussion_has_marker(discussion: Discussion) -> bool:
    return any(has_marker(note.body) for note in discussion.notes)


def is_resolvable_tool_discussion(discussion: Discussion) -> bool:
    """Open, resolvable, and carrying the marker."""
    if discussion.resolved or not discussion.resolvable:
        return False
    return discussion_has_marker(discussion)


def is_summary_note(body: str) -> bool:
    """Tagged with the marker and headed as a summary. Inline envelopes never count."""
    if not has_marker(body) or SUMMARY_HEADING not in body:
        return False
    return envelope_kind(body) in (None, KIND_SUMMARY)


def find_latest_summary_note(notes: Iterable[Note]) -> Note | None:
    """The tagged summary note with the greatest ID, if any."""
    latest: Note | None = None
    for note in notes:
        if not is_summary_note(note.body):
            continue
        if latest is None or note.id > latest.id:
            latest = note
    return latest


def resolve_previous_discussions(
    client: ReviewHost,
    project_id: int,
    mr_iid: int,
    *,
    dry_run: bool = False,
    on_resolve: Callable[[Discussion], None] | None = None,
) -> int:
    """Resolve open discussions left by earlier runs; return how many.

    Raises:
        ReconcileError: a resolve call failed; `completed` holds the count so far.
    """
    resolved = 0
    for discussion in client.list_discussions(project_id, mr_iid):
        if not is_resolvable_tool_discussion(discussion):
            continue
        if on_resolve is not None:
            on_resolve(discussion)
        if not dry_run:
            try:
                client.resolve_discussion(project_id, mr_iid, discussion.id)
            except Exception as exc:
                raise ReconcileError(
                    f"failed to resolve discussion {discussion.id}: {exc}", completed=resolved
                ) from exc
        resolved += 1
    return resolved


def post_inline_findings(
    client: ReviewHost,
    project_id: int,
    mr_iid: int,
    findings: Iterable[Finding],
    index: DiffLineIndex,
    diff_refs: DiffRefs,
    *,
    dry_run: bool = False,
    on_demote: DemoteHook | None = None,
    on_post: Callable[[Finding, Resolved], None] | None = None,
) -> InlineOutcome:
    """Post one diff note per finding, demoting the ones GitLab cannot anchor.

    A finding is demoted to the summary when its path or line is not in the
    diff, or when GitLab rejects its line pair. Any other failure aborts.

    Raises:
        ReconcileError: a create call failed for another reason.
    """
    outcome = InlineOutcome()

    def _demote(finding: Finding, reason: str) -> None:
        outcome.demoted.append(finding)
        if on_demote is not None:
            on_demote(finding, reason)

    for finding in findings:
        resolution = resolve_finding(finding, index)
        if isinstance(resolution, NotFound):
            _demote(finding, "path not found in diff mapping")
            continue
        if isinstance(resolution, PathOnly):
            _demote(finding, "line not in diff")
            continue

        if on_post is not None:
            on_post(finding, resolution)
        if dry_run:
            outcome.posted += 1
            continue

        try:
            client.create_inline_discussion(
                project_id,
                mr_iid,
                body=render_inline_comment(finding),
                old_path=resolution.identity.old_path,
                new_path=resolution.identity.new_path,
                old_line=resolution.coordinates.old_line,
                new_line=resolution.coordinates.new_line,
                diff_refs=diff_refs,
            )
        except InvalidInlinePositionError as exc:
            _demote(finding, f"invalid diff line mapping ({exc})")
            continue
        except Exception as exc:
            raise ReconcileError(
                f"failed to post inline discussion for SonarQube issue {finding.key!r}: {exc}",
                completed=outcome.posted,
            ) from exc
        outcome.posted += 1

    return outcome


def upsert_summary_note(
    client: ReviewHost,
    project_id: int,
    mr_iid: int,
    body: str,
    *,
    dry_run: bool = False,
) -> str:
    """Update the latest tagged summary note, or create one if none exists.

    Older duplicate summaries are left in place. Returns SUMMARY_CREATED or
    SUMMARY_UPDATED (what would happen, in dry-run).
    """
    existing = find_latest_summary_note(client.list_notes(project_id, mr_iid))
    if existing is None:
        if not dry_run:
            client.create_note(project_id, mr_iid, body)
        return SUMMARY_CREATED

    if not dry_run:
        client.update_note(project_id, mr_iid, existing.id, body)
    return SUMMARY_UPDATED
