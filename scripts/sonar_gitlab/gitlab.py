"""GitLab merge request API client.

Covers what the commenter needs: merge request diff refs and changes,
discussions (list / resolve / create diff note) and notes
(list / create / update). Pagination follows `X-Next-Page` sequentially.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sonar_gitlab.diff_lines import ChangedFile
from sonar_gitlab.transport import Deadline, HostError, HttpOpen, JsonTransport

PER_PAGE = 100

# GitLab answers an unmappable diff position with a 400 like
# `Note {:line_code=>["can't be blank", "must be a valid line code"]}`.
INVALID_POSITION_VOCABULARY = ("line_code", "line code")


class InvalidInlinePositionError(HostError):
    """GitLab rejected the (old_line, new_line) pair of a diff note."""


@dataclass(frozen=True)
class DiffRefs:
    base_sha: str
    start_sha: str
    head_sha: str

    def normalized(self) -> "DiffRefs":
        return DiffRefs(self.base_sha.strip(), self.start_sha.strip(), self.head_sha.strip())


@dataclass(frozen=True)
class MergeRequest:
    iid: int
    diff_refs: DiffRefs


@dataclass(frozen=True)
class Note:
    id: int
    body: str


@dataclass(frozen=True)
class Discussion:
    id: str
    resolved: bool
    resolvable: bool
    notes: list[Note] = field(default_factory=list)


def _validate_coordinates(project_id: int, mr_iid: int) -> None:
    if project_id <= 0:
        raise ValueError("project ID must be positive")
    if mr_iid <= 0:
        raise ValueError("merge request IID must be positive")


def _require_body(body: str, what: str) -> None:
    if not body.strip():
        raise ValueError(f"{what} body cannot be empty")


def is_invalid_position_error(exc: HostError) -> bool:
    """True when a failed diff-note create names GitLab's line identity check."""
    if exc.status not in (400, 422):
        return False
    text = f"{exc.body} {exc}".lower()
    return any(word in text for word in INVALID_POSITION_VOCABULARY)


class GitLabClient:
    """Client for one GitLab instance."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        deadline: Deadline | None = None,
        opener: HttpOpen | None = None,
    ) -> None:
        self._transport = JsonTransport(
            host="GitLab",
            base_url=base_url,
            headers={"PRIVATE-TOKEN": token.strip()},
            deadline=deadline,
            opener=opener,
        )

    @property
    def base_url(self) -> str:
        return self._transport.base_url

    def _mr_endpoint(self, project_id: int, mr_iid: int, suffix: str = "") -> str:
        _validate_coordinates(project_id, mr_iid)
        return f"/api/v4/projects/{project_id}/merge_requests/{mr_iid}{suffix}"

    def _paginate(self, endpoint: str, **extra: object) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = "1"
        while True:
            payload, headers = self._transport.request(
                "GET", endpoint, query={"per_page": PER_PAGE, "page": page, **extra}
            )
            if isinstance(payload, list):
                items.extend(item for item in payload if isinstance(item, dict))
            next_page = str(headers.get("X-Next-Page") or "").strip()
            if not next_page:
                break
            page = next_page
        return items

    def get_merge_request(self, project_id: int, mr_iid: int) -> MergeRequest:
        """Fetch the merge request and its diff refs."""
        endpoint = self._mr_endpoint(project_id, mr_iid)
        payload, _ = self._transport.request("GET", endpoint)
        if not isinstance(payload, dict):
            raise HostError(f"unexpected GitLab response from {endpoint}", host="GitLab", endpoint=endpoint)
        if payload.get("iid") != mr_iid:
            raise HostError(
                f"GitLab API returned unexpected merge request IID {payload.get('iid')} for {endpoint}",
                host="GitLab",
                endpoint=endpoint,
            )
        refs = payload.get("diff_refs") or {}
        return MergeRequest(
            iid=mr_iid,
            diff_refs=DiffRefs(
                base_sha=str(refs.get("base_sha") or ""),
                start_sha=str(refs.get("start_sha") or ""),
                head_sha=str(refs.get("head_sha") or ""),
            ),
        )

    def list_merge_request_changes(self, project_id: int, mr_iid: int) -> list[ChangedFile]:
        """Changed files with their unified diff bodies."""
        endpoint = self._mr_endpoint(project_id, mr_iid, "/changes")
        payload, _ = self._transport.request("GET", endpoint)
        changes = payload.get("changes") if isinstance(payload, dict) else None
        if not isinstance(changes, list):
            return []
        files: list[ChangedFile] = []
        for item in changes:
            if not isinstance(item, dict):
                continue
            files.append(
                ChangedFile(
                    old_path=str(item.get("old_path") or ""),
                    new_path=str(item.get("new_path") or ""),
                    diff=str(item.get("diff") or ""),
                )
            )
        return files

    def list_discussions(self, project_id: int, mr_iid: int) -> list[Discussion]:
        endpoint = self._mr_endpoint(project_id, mr_iid, "/discussions")
        discussions: list[Discussion] = []
        for item in self._paginate(endpoint):
            notes = [
                Note(id=int(n.get("id") or 0), body=str(n.get("body") or ""))
                for n in item.get("notes") or []
                if isinstance(n, dict)
            ]
            discussions.append(
                Discussion(
                    id=str(item.get("id") or ""),
                    resolved=bool(item.get("resolved")),
                    resolvable=bool(item.get("resolvable")),
                    notes=notes,
                )
            )
        return discussions

    def resolve_discussion(self, project_id: int, mr_iid: int, discussion_id: str) -> None:
        discussion_id = discussion_id.strip()
        if not discussion_id:
            raise ValueError("discussion ID cannot be empty")
        endpoint = self._mr_endpoint(project_id, mr_iid, f"/discussions/{discussion_id}")
        self._transport.request("PUT", endpoint, form={"resolved": "true"})

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
        """Create a diff note.

        `old_line`/`new_line` are sent only when positive: added lines carry
        `new_line` alone, context lines carry both.

        Raises:
            InvalidInlinePositionError: GitLab could not map the line pair.
            HostError: any other failure.
        """
        endpoint = self._mr_endpoint(project_id, mr_iid, "/discussions")
        _require_body(body, "discussion")
        old_path = old_path.strip()
        new_path = new_path.strip()
        if not new_path:
            raise ValueError("discussion path cannot be empty")
        if old_line <= 0 and new_line <= 0:
            raise ValueError("discussion line must be positive")
        refs = diff_refs.normalized()
        if not (refs.base_sha and refs.start_sha and refs.head_sha):
            raise ValueError(
                "merge request diff refs are incomplete: "
                f"base_sha={bool(refs.base_sha)} start_sha={bool(refs.start_sha)} head_sha={bool(refs.head_sha)}"
            )

        form: dict[str, object] = {
            "body": body,
            "position[position_type]": "text",
            "position[base_sha]": refs.base_sha,
            "position[start_sha]": refs.start_sha,
            "position[head_sha]": refs.head_sha,
            "position[old_path]": old_path or new_path,
            "position[new_path]": new_path,
        }
        if old_line > 0:
            form["position[old_line]"] = old_line
        if new_line > 0:
            form["position[new_line]"] = new_line

        try:
            self._transport.request("POST", endpoint, form=form)
        except HostError as exc:
            if is_invalid_position_error(exc):
                raise InvalidInlinePositionError(
                    str(exc), host=exc.host, endpoint=exc.endpoint, status=exc.status, body=exc.body
                ) from exc
            raise

    def list_notes(self, project_id: int, mr_iid: int) -> list[Note]:
        """All merge request notes, oldest first."""
        endpoint = self._mr_endpoint(project_id, mr_iid, "/notes")
        # GitLab lists notes newest first by default.
        items = self._paginate(endpoint, sort="asc", order_by="created_at")
        return [Note(id=int(item.get("id") or 0), body=str(item.get("body") or "")) for item in items]

    def create_note(self, project_id: int, mr_iid: int, body: str) -> None:
        endpoint = self._mr_endpoint(project_id, mr_iid, "/notes")
        _require_body(body, "note")
        self._transport.request("POST", endpoint, form={"body": body})

    def update_note(self, project_id: int, mr_iid: int, note_id: int, body: str) -> None:
        if note_id <= 0:
            raise ValueError("note ID must be positive")
        endpoint = self._mr_endpoint(project_id, mr_iid, f"/notes/{note_id}")
        _require_body(body, "note")
        self._transport.request("PUT", endpoint, form={"body": body})
