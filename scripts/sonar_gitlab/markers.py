"""Authorship markers embedded in comments posted by this tool.

Bodies are wrapped in a versioned HTML comment envelope:

    <!-- sonar-gitlab-commenter:v1 kind=summary -->
    ...
    <!-- /sonar-gitlab-commenter -->

Notes written by older releases carry only LEGACY_MARKER and are still
recognized, so their discussions are resolved and their summary is updated.
"""

from __future__ import annotations

import re

LEGACY_MARKER = "<!-- sonar-gitlab-commenter -->"
SCHEMA_VERSION = 1
SUMMARY_HEADING = "**SonarQube summary**"

KIND_INLINE = "inline"
KIND_SUMMARY = "summary"

_ENVELOPE_SUFFIX = "<!-- /sonar-gitlab-commenter -->"
_ENVELOPE_RE = re.compile(r"<!-- sonar-gitlab-commenter:v(?P<version>\d+)(?: kind=(?P<kind>[a-z]+))? -->")


def envelope_prefix(kind: str) -> str:
    return f"<!-- sonar-gitlab-commenter:v{SCHEMA_VERSION} kind={kind} -->"


def wrap(body: str, kind: str) -> str:
    """Wrap a rendered body in the tagged envelope."""
    return f"{envelope_prefix(kind)}\n{body.strip()}\n{_ENVELOPE_SUFFIX}"


def has_marker(body: object) -> bool:
    """True when the body was written by this tool (any schema version)."""
    text = str(body or "")
    return LEGACY_MARKER in text or _ENVELOPE_RE.search(text) is not None


def envelope_version(body: object) -> int | None:
    """Schema version of the envelope, 0 for legacy notes, None if untagged."""
    text = str(body or "")
    m = _ENVELOPE_RE.search(text)
    if m:
        return int(m.group("version"))
    if LEGACY_MARKER in text:
        return 0
    return None


def envelope_kind(body: object) -> str | None:
    m = _ENVELOPE_RE.search(str(body or ""))
    if not m:
        return None
    return m.group("kind")
