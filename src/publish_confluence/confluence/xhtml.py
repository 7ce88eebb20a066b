"""Extract storage-format validation problems from Confluence error responses."""

from __future__ import annotations

import re
from typing import Any

from publish_confluence.errors import XhtmlIssue


_LINE_RE = re.compile(r"Error on line (\d+)(?:, column (\d+))?", re.IGNORECASE)
_UNTERMINATED_RE = re.compile(r"The element type [\"']?([^\s\"']+)[\"']? must be terminated", re.IGNORECASE)
_MISMATCH_RE = re.compile(r"Unexpected close tag </([^>]+)>; expected </([^>]+)>", re.IGNORECASE)
_ROW_COL_RE = re.compile(r"at \[row,col [^:]*\]: \[(\d+),(\d+)\]", re.IGNORECASE)
_ENTITY_RE = re.compile(r"The entity name must immediately follow the '&'", re.IGNORECASE)
_PREFIX_RE = re.compile(r"^(?:invalid xhtml|error parsing xhtml)\s*:?\s*", re.IGNORECASE)

XHTML_MARKERS = ("invalid xhtml", "error parsing xhtml")


def _clean(message: str) -> str:
    return _PREFIX_RE.sub("", message.strip()) or message


def _parse_message(message: str) -> list[XhtmlIssue]:
    mismatch = _MISMATCH_RE.search(message)
    row_col = _ROW_COL_RE.search(message)
    line = _LINE_RE.search(message)
    unterminated = _UNTERMINATED_RE.search(message)

    if mismatch:
        found, expected = mismatch.groups()
        return [
            XhtmlIssue(
                message=f"Tag mismatch: found </{found}> where </{expected}> was expected",
                raw_message=message,
                line=int(row_col.group(1)) if row_col else None,
                column=int(row_col.group(2)) if row_col else None,
                tag_name=found,
            )
        ]
    if line:
        return [
            XhtmlIssue(
                message=_clean(message),
                raw_message=message,
                line=int(line.group(1)),
                column=int(line.group(2)) if line.group(2) else None,
            )
        ]
    if unterminated:
        tag = unterminated.group(1)
        return [XhtmlIssue(message=f"Unclosed HTML tag: <{tag}>", raw_message=message, tag_name=tag)]
    if _ENTITY_RE.search(message):
        return [
            XhtmlIssue(
                message="Invalid HTML entity: escape '&' as '&amp;' outside entity references",
                raw_message=message,
            )
        ]
    if row_col:
        return [
            XhtmlIssue(
                message=_clean(message),
                raw_message=message,
                line=int(row_col.group(1)),
                column=int(row_col.group(2)),
            )
        ]
    if any(marker in message.lower() for marker in XHTML_MARKERS):
        return [XhtmlIssue(message=_clean(message), raw_message=message)]
    return []


def parse_xhtml_errors(payload: Any) -> list[XhtmlIssue]:
    """Return the XHTML problems described by a 400 response body.

    Both the top-level ``message`` and the entries of an ``errors`` array are
    inspected. Responses that do not describe malformed content yield ``[]``.
    """

    if not isinstance(payload, dict):
        return []

    issues: list[XhtmlIssue] = []
    message = payload.get("message")
    if isinstance(message, str):
        issues.extend(_parse_message(message))

    for entry in payload.get("errors") or []:
        text = entry.get("message") if isinstance(entry, dict) else None
        if isinstance(text, str):
            issues.extend(_parse_message(text))
    return issues


def xhtml_suggestions(issues: list[XhtmlIssue]) -> list[str]:
    suggestions = ["Ensure all HTML tags are properly closed, e.g. <div></div>"]
    if any(issue.tag_name and "mismatch" in issue.message.lower() for issue in issues):
        suggestions.append("Fix tag nesting: tags must close in reverse order, e.g. <li><div></div></li>")
    if any("entity" in issue.message.lower() for issue in issues):
        suggestions.append("Write & as &amp;, < as &lt; and > as &gt; outside markup")
    if any("ac:" in issue.raw_message or "ri:" in issue.raw_message for issue in issues):
        suggestions.append("Check the structure of Confluence macros such as <ac:structured-macro>")
    suggestions.append("Remove invalid or unrecognized HTML attributes")
    return suggestions
