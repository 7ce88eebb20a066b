"""Utilities for mapping Confluence page titles to filesystem-friendly names."""

from __future__ import annotations

import re


_INVALID_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_DOTS_RE = re.compile(r"\.+$")

MAX_NAME_LENGTH = 250


def sanitize_dir_name(value: str, *, fallback: str = "page") -> str:
    """Return a directory name derived from the page title ``value``.

    Characters that are invalid on common filesystems become underscores,
    whitespace runs become a single hyphen and trailing dots are dropped.
    Case is preserved so that directory names stay recognisable.
    """

    value = _INVALID_CHARS_RE.sub("_", value.strip())
    value = _WHITESPACE_RE.sub("-", value)
    value = _TRAILING_DOTS_RE.sub("", value)
    value = value[:MAX_NAME_LENGTH]
    if not value or value in {".", ".."}:
        return fallback
    return value
