"""Tests for resolving, posting and upserting tool-authored annotations."""
from __future__ import annotations

import pytest

from sonar_gitlab.diff_lines import ChangedFile, build_diff_line_index
from sonar_gitlab.findings import Finding
from sonar_gitlab.gitlab import DiffRefs, Discussion, InvalidInlinePositionError, Note
from sonar_gitlab.markdown import render_summary
from sonar_gitlab.markers import LEGACY_MARKER, KIND_INLINE, wrap
from sonar_gitlab.reconcile import (
    SUMMARY_CREATED,
    SUMMARY_UPDATED,
    ReconcileError,
    find_latest_summary_note,
    is_resolvable_tool_discussion,
    post_inline_findings,
    resolve_previous_discussions,
    upsert_summary_note,
)
from sonar_gitlab.sonar import QualityReport
from sonar_gitlab.transport import HostError

REFS = DiffRefs("base", "start", "head")
TOOL_BODY = wrap("**SonarQube issue**", KIND_INLINE)


class FakeHost:
    """In-memory merge request implementing the ReviewHost calls."""

    def __init__(self, discussions=None, notes=None):
        self.discussions = list(discussions or [])
        self.notes = list(notes or [])
        self.resolved: list[str] = []
        self.created_discussions: list[dict] = []
        self.created_notes: list[str] = []
        self.updated_notes: list[tuple[int, str]] = []
        self.fail_resolve: set[str] = set()
        self.reject_lines: set[int] = set()
        self.fail_lines: set[int] = set()

    def list_discussions(self, project_id, mr_iid):
        return list(self.discussions)

    def resolve_discussion(self, project_id, mr_iid, discussion_id):
        if discussion_id in self.fail_resolve:
            raise HostError("HTTP 500", host="GitLab", status=500)
        self.resolved.append(discussion_id)

    def create_inline_discussion(self, project_id, mr_iid, **kwargs):
        line = kwargs["new_line"]
        if line in self.reject_lines:
            raise InvalidInlinePositionError("line_code is invalid", host="GitLab", status=400, body="line_code")
        if line in self.fail_lines:
            raise HostError("HTTP 500", host="GitLab", status=500)
        self.created_discussions.append(kwargs)

    def list_notes(self, project_id, mr_iid):
        return list(self.notes)

    def create_note(self, project_id, mr_iid, body):
        self.created_notes.append(body)
        self.notes.append(Note(id=1000 + len(self.created_notes), body=body))

    def update_note(self, project_id, mr_iid, note_id, body):
        self.updated_notes.append((note_id, body))
        self.notes = [Note(n.id, body) if n.id == note_id else n for n in self.notes]


def _discussion(id_, body, resolved=False, resolvable=True):
    return Discussion(id=id_, resolved=resolved, resolvable=resolvable, notes=[Note(1, body)])


class TestResolvePreviousDiscussions:
    def test_only_open_resolvable_tool_discussions(self):
        host = FakeHost(
            discussions=[
                _discussion("tool", TOOL_BODY),
                _discussion("legacy", f"{LEGACY_MARKER}\nold style"),
                _discussion("human", "looks good"),
                _discussion("done", TOOL_BODY, resolved=True),
                _discussion("plain-note", TOOL_BODY, resolvable=False),
            ]
        )
        assert resolve_previous_discussions(host, 1, 2) == 2
        assert host.resolved == ["tool", "legacy"]

    def test_marker_in_a_reply_counts(self):
        d = Discussion("mixed", False, True, [Note(1, "human start"), Note(2, TOOL_BODY)])
        assert is_resolvable_tool_discussion(d)

    def test_dry_run_counts_without_writing(self):
        host = FakeHost(discussions=[_discussion("a", TOOL_BODY), _discussion("b", TOOL_BODY)])
        seen: list[str] = []
        count = resolve_previous_discussions(host, 1, 2, dry_run=True, on_resolve=lambda d: seen.append(d.id))
        assert count == 2
        assert seen == ["a", "b"]
        assert host.resolved == []

    def test_failure_stops_with_partial_count(self):
        host = FakeHost(
            discussions=[_discussion("a", TOOL_BODY), _discussion("b", TOOL_BODY), _discussion("c", TOOL_BODY)]
        )
        host.fail_resolve = {"b"}
        with pytest.raises(ReconcileError, match="failed to resolve discussion b") as info:
            resolve_previous_discussions(host, 1, 2)
        assert info.value.completed == 1
        assert host.resolved == ["a"]


def _index():
    diff = "@@ -1,2 +1,3 @@\n ctx\n+added\n ctx2\n"
    return build_diff_line_index([ChangedFile("src/old.go", "src/app.go", diff)])


def _finding(key, line, path="src/app.go", severity="MAJOR"):
    return Finding(key=key, rule="go:S1", severity=severity, message=f"problem {key}", file_path=path, line=line)


class TestPostInlineFindings:
    def test_posts_with_old_and_new_coordinates(self):
        host = FakeHost()
        outcome = post_inline_findings(host, 1, 2, [_finding("A", 2), _finding("B", 3)], _index(), REFS)

        assert outcome.posted == 2
        assert outcome.demoted == []
        added, context = host.created_discussions
        assert (added["old_path"], added["new_path"]) == ("src/old.go", "src/app.go")
        assert (added["old_line"], added["new_line"]) == (0, 2)
        assert (context["old_line"], context["new_line"]) == (2, 3)
        assert added["diff_refs"] == REFS
        assert "problem A" in added["body"]
        assert LEGACY_MARKER not in added["body"]
        assert added["body"].startswith("<!-- sonar-gitlab-commenter:v1 kind=inline -->")

    def test_demotes_unmapped_path_and_line(self):
        host = FakeHost()
        reasons: list[str] = []
        outcome = post_inline_findings(
            host,
            1,
            2,
            [_finding("A", 2, path="other.go"), _finding("B", 99)],
            _index(),
            REFS,
            on_demote=lambda f, reason: reasons.append(reason),
        )
        assert outcome.posted == 0
        assert [f.key for f in outcome.demoted] == ["A", "B"]
        assert reasons == ["path not found in diff mapping", "line not in diff"]
        assert host.created_discussions == []

    def test_rejected_position_is_demoted_and_run_continues(self):
        host = FakeHost()
        host.reject_lines = {2}
        reasons: list[str] = []
        outcome = post_inline_findings(
            host,
            1,
            2,
            [_finding("A", 2), _finding("B", 3)],
            _index(),
            REFS,
            on_demote=lambda f, reason: reasons.append(reason),
        )
        assert outcome.posted == 1
        assert [f.key for f in outcome.demoted] == ["A"]
        assert reasons[0].startswith("invalid diff line mapping")

    def test_other_failure_aborts_with_partial_count(self):
        host = FakeHost()
        host.fail_lines = {3}
        with pytest.raises(ReconcileError, match="SonarQube issue 'B'") as info:
            post_inline_findings(host, 1, 2, [_finding("A", 2), _finding("B", 3), _finding("C", 1)], _index(), REFS)
        assert info.value.completed == 1
        assert len(host.created_discussions) == 1

    def test_dry_run_counts_without_writing(self):
        host = FakeHost()
        posted = []
        outcome = post_inline_findings(
            host, 1, 2, [_finding("A", 2)], _index(), REFS, dry_run=True, on_post=lambda f, r: posted.append(r)
        )
        assert outcome.posted == 1
        assert host.created_discussions == []
        assert posted[0].coordinates.new_line == 2


def _summary(status="passed"):
    return render_summary(QualityReport(status, 50.0, 25.0), [], [])


class TestUpsertSummaryNote:
    def test_creates_on_first_run_then_updates(self):
        host = FakeHost(notes=[Note(1, "human comment")])

        assert upsert_summary_note(host, 1, 2, _summary()) == SUMMARY_CREATED
        assert len(host.created_notes) == 1

        assert upsert_summary_note(host, 1, 2, _summary("failed")) == SUMMARY_UPDATED
        assert len(host.created_notes) == 1
        assert len(host.updated_notes) == 1
        assert "failed" in host.notes[-1].body

    def test_updates_latest_tagged_summary(self):
        old = _summary()
        host = FakeHost(
            notes=[
                Note(3, old),
                Note(9, f"{LEGACY_MARKER}\n**SonarQube summary**\nlegacy"),
                Note(12, "**SonarQube summary** quoted by a human"),
                Note(5, TOOL_BODY),
            ]
        )
        assert upsert_summary_note(host, 1, 2, _summary("failed")) == SUMMARY_UPDATED
        assert [note_id for note_id, _ in host.updated_notes] == [9]
        assert host.created_notes == []

    def test_dry_run_reports_without_writing(self):
        host = FakeHost()
        assert upsert_summary_note(host, 1, 2, _summary(), dry_run=True) == SUMMARY_CREATED
        host.notes = [Note(4, _summary())]
        assert upsert_summary_note(host, 1, 2, _summary(), dry_run=True) == SUMMARY_UPDATED
        assert host.created_notes == []
        assert host.updated_notes == []

    def test_find_latest_summary_note_none_without_marker(self):
        assert find_latest_summary_note([Note(1, "**SonarQube summary**")]) is None


def test_inline_note_quoting_summary_heading_is_not_a_summary():
    quoted = wrap("**SonarQube summary** mentioned in an issue message", KIND_INLINE)
    host = FakeHost(notes=[Note(8, quoted)])

    assert upsert_summary_note(host, 1, 2, _summary()) == SUMMARY_CREATED
    assert host.updated_notes == []
