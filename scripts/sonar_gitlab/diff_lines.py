"""Unified diff helpers for GitLab merge request line comments.

GitLab anchors a diff note with an (old_line, new_line) pair: added lines
carry only `new_line`, unchanged context lines carry both. This module maps
new-file line numbers to that classification for every changed file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

_HUNK_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)


class LineKind(Enum):
    ADDED = "added"
    CONTEXT = "context"


@dataclass(frozen=True)
class LineInfo:
    """One visible new-file line. `old_line` is 0 for added lines."""
    kind: LineKind
    old_line: int
    new_line: int


@dataclass(frozen=True)
class PathIdentity:
    old_path: str
    new_path: str


@dataclass(frozen=True)
class ChangedFile:
    """A file touched by the merge request, with its unified diff body."""
    old_path: str
    new_path: str
    diff: str


@dataclass(frozen=True)
class DiffLineIndex:
    """Normalized path -> visible lines, plus old/new path identity per file."""
    lines: dict[str, dict[int, LineInfo]] = field(default_factory=dict)
    paths: dict[str, PathIdentity] = field(default_factory=dict)
    duplicate_paths: tuple[str, ...] = ()

    def lines_for(self, path: object) -> dict[int, LineInfo] | None:
        return self.lines.get(normalize_repo_path(path))

    def identity_for(self, path: object) -> PathIdentity | None:
        return self.paths.get(normalize_repo_path(path))

    def stats(self) -> tuple[int, int]:
        """Return (file count, visible line count)."""
        return len(self.lines), sum(len(v) for v in self.lines.values())


def normalize_repo_path(path: object) -> str:
    """Strip whitespace, a leading `./` and surrounding slashes."""
    text = str(path or "").strip()
    if text.startswith("./"):
        text = text[2:]
    return text.strip("/")


def parse_hunk_header(line: str) -> tuple[int, int] | None:
    """Return (old_start, new_start) for a hunk header, None if malformed."""
    m = _HUNK_RE.match(line)
    if not m:
        return None
    old_start = int(m.group("old_start"))
    new_start = int(m.group("new_start"))
    if old_start < 0 or new_start <= 0:
        return None
    return old_start, new_start


def extract_diff_lines(diff: str | None) -> dict[int, LineInfo]:
    """Return map: new-file line number -> LineInfo.

    Only added and context lines are recorded. Deletions advance the old-file
    counter only. Lines outside a valid hunk are ignored, and a malformed
    hunk header stops indexing until the next valid one.
    """
    mapping: dict[int, LineInfo] = {}
    old_line = 0
    new_line = 0
    in_hunk = False

    for raw in (diff or "").replace("\r\n", "\n").split("\n"):
        if raw.startswith("@@"):
            header = parse_hunk_header(raw)
            if header is None:
                in_hunk = False
                continue
            old_line, new_line = header
            in_hunk = True
            continue

        if not in_hunk or not raw:
            continue

        prefix = raw[0]
        if prefix == "+":
            if raw.startswith("+++"):
                continue
            mapping[new_line] = LineInfo(LineKind.ADDED, 0, new_line)
            new_line += 1
        elif prefix == "-":
            if raw.startswith("---"):
                continue
            old_line += 1
        elif prefix == " ":
            mapping[new_line] = LineInfo(LineKind.CONTEXT, old_line, new_line)
            old_line += 1
            new_line += 1
        # "\ No newline at end of file" and anything else: no counter change.

    return mapping


def build_diff_line_index(changes: Iterable[ChangedFile]) -> DiffLineIndex:
    """Index every changed file by its normalized new path.

    A later file normalizing to an already indexed path replaces the earlier
    entry; such keys are listed in `duplicate_paths`.
    """
    lines: dict[str, dict[int, LineInfo]] = {}
    paths: dict[str, PathIdentity] = {}
    duplicates: list[str] = []

    for change in changes:
        key = normalize_repo_path(change.new_path)
        if not key:
            continue
        file_lines = extract_diff_lines(change.diff)
        if not file_lines:
            continue
        if key in lines and key not in duplicates:
            duplicates.append(key)
        lines[key] = file_lines
        paths[key] = PathIdentity(old_path=change.old_path, new_path=change.new_path)

    return DiffLineIndex(lines=lines, paths=paths, duplicate_paths=tuple(duplicates))
