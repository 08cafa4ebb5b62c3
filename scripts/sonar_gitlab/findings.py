"""SonarQube findings and their placement on the merge request diff.

A finding is either anchored inline (its file and line are visible in the
diff) or project-level, in which case it is only listed in the summary note.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from sonar_gitlab.diff_lines import DiffLineIndex, LineInfo, LineKind, PathIdentity


@dataclass(frozen=True)
class Finding:
    """One SonarQube issue; unbound issues have an empty path and line 0."""
    key: str
    rule: str
    severity: str
    message: str
    file_path: str = ""
    line: int = 0
    issue_type: str = ""

    @property
    def has_line_binding(self) -> bool:
        return bool(self.file_path.strip()) and self.line > 0


@dataclass(frozen=True)
class CoordinatePair:
    """Line pair for a GitLab diff note. Zero means "not sent"."""
    old_line: int
    new_line: int

    @classmethod
    def for_line(cls, info: LineInfo) -> "CoordinatePair":
        if info.kind is LineKind.CONTEXT:
            return cls(old_line=info.old_line, new_line=info.new_line)
        return cls(old_line=0, new_line=info.new_line)


@dataclass(frozen=True)
class NotFound:
    """The finding's file is not part of the diff."""


@dataclass(frozen=True)
class PathOnly:
    """The file is in the diff but the finding's line is not visible."""
    identity: PathIdentity


@dataclass(frozen=True)
class Resolved:
    identity: PathIdentity
    coordinates: CoordinatePair
    kind: LineKind


Resolution = Union[NotFound, PathOnly, Resolved]


def resolve_finding(finding: Finding, index: DiffLineIndex) -> Resolution:
    """Look the finding up by path, then by line."""
    identity = index.identity_for(finding.file_path)
    file_lines = index.lines_for(finding.file_path)
    if identity is None or file_lines is None:
        return NotFound()

    info = file_lines.get(finding.line) if finding.line > 0 else None
    if info is None:
        return PathOnly(identity)
    return Resolved(identity, CoordinatePair.for_line(info), info.kind)


def filter_by_diff(findings: Iterable[Finding], index: DiffLineIndex) -> list[Finding]:
    """Keep only findings whose file and line are visible in the diff."""
    return [f for f in findings if f.has_line_binding and isinstance(resolve_finding(f, index), Resolved)]


def split_by_line_binding(findings: Iterable[Finding]) -> tuple[list[Finding], list[Finding]]:
    """Return (inline candidates, project-level findings)."""
    inline: list[Finding] = []
    project_level: list[Finding] = []
    for finding in findings:
        if finding.has_line_binding:
            inline.append(finding)
        else:
            project_level.append(finding)
    return inline, project_level


def compact(value: object) -> str:
    """Collapse whitespace for single-line log output."""
    return " ".join(str(value or "").split())
