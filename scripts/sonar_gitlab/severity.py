"""SonarQube severity levels and threshold filtering."""

from __future__ import annotations

from enum import IntEnum
from typing import Iterable, TypeVar

T = TypeVar("T")


class Severity(IntEnum):
    """SonarQube issue severity, ordered from least to most severe."""

    INFO = 0
    MINOR = 1
    MAJOR = 2
    CRITICAL = 3
    BLOCKER = 4

    @classmethod
    def parse(cls, value: object) -> "Severity | None":
        """Return the matching severity (case-insensitive) or None when unknown."""
        text = normalize_severity(value)
        try:
            return cls[text]
        except KeyError:
            return None


def normalize_severity(value: object) -> str:
    return str(value or "").strip().upper()


def is_valid_severity(value: object) -> bool:
    return Severity.parse(value) is not None


def allowed_severities() -> list[str]:
    """Severity names, least severe first."""
    return [s.name for s in Severity]


def summary_order() -> list[str]:
    """Severity names, most severe first (summary rendering order)."""
    return [s.name for s in sorted(Severity, reverse=True)]


def filter_by_severity(findings: Iterable[T], threshold: str | None) -> list[T]:
    """Keep findings at or above threshold, preserving input order.

    A blank or unrecognized threshold disables filtering. With a threshold
    set, findings whose own severity is unrecognized are dropped.
    """
    items = list(findings)
    minimum = Severity.parse(threshold)
    if minimum is None:
        return items

    kept: list[T] = []
    for item in items:
        level = Severity.parse(getattr(item, "severity", None))
        if level is None or level < minimum:
            continue
        kept.append(item)
    return kept
