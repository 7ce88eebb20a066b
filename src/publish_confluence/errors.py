"""Exception hierarchy shared by the backends and the publishing workflow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence


class PublishError(Exception):
    """Base class for every error raised by publish-confluence."""


@dataclass(slots=True)
class XhtmlIssue:
    """One problem Confluence found in submitted storage-format content."""

    message: str
    raw_message: str
    line: Optional[int] = None
    column: Optional[int] = None
    tag_name: Optional[str] = None

    @property
    def location(self) -> str:
        parts = []
        if self.line is not None:
            parts.append(f"Line {self.line}" + (f", Column {self.column}" if self.column is not None else ""))
        if self.tag_name:
            parts.append(f"Tag <{self.tag_name}>")
        return " - ".join(parts)


class ConfluenceApiError(PublishError):
    """A backend operation failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BadRequestError(ConfluenceApiError):
    """The backend rejected the request payload (HTTP 400).

    ``xhtml_errors`` lists the storage-format problems Confluence reported,
    if the payload was rejected as malformed XHTML.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = 400,
        xhtml_errors: Sequence[XhtmlIssue] = (),
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.xhtml_errors = list(xhtml_errors)


class AuthenticationError(ConfluenceApiError):
    """Credentials were rejected (HTTP 401)."""


class PermissionDeniedError(ConfluenceApiError):
    """The account may not perform the operation (HTTP 403)."""


class ResourceNotFoundError(ConfluenceApiError):
    """A page, space or attachment addressed by identifier does not exist."""

    def __init__(self, resource_type: str, identifier: str, *, status_code: Optional[int] = 404) -> None:
        super().__init__(f"{resource_type} not found: {identifier}", status_code=status_code)
        self.resource_type = resource_type
        self.identifier = identifier


class PageAlreadyExistsError(ConfluenceApiError):
    """A page with the same title already exists in the space."""

    def __init__(self, space_key: str, title: str) -> None:
        super().__init__(
            f"A page with this title already exists: {title!r} in space {space_key!r}",
            status_code=400,
        )
        self.space_key = space_key
        self.title = title


class VersionConflictError(ConfluenceApiError):
    """The version sent with an update is not the page's current version."""

    def __init__(self, page_id: str, expected_version: int, current_version: Optional[int] = None) -> None:
        detail = f", current version is {current_version}" if current_version is not None else ""
        super().__init__(
            f"Version conflict on page {page_id}: update was based on version {expected_version}{detail}",
            status_code=409,
        )
        self.page_id = page_id
        self.expected_version = expected_version
        self.current_version = current_version


class TransportError(ConfluenceApiError):
    """The backend could not be reached or answered with a transient failure."""


class AttachmentUploadError(PublishError):
    """A single attachment could not be uploaded."""

    def __init__(self, filename: str, page_id: str, reason: str) -> None:
        super().__init__(f"Failed to upload attachment {filename!r} to page {page_id}: {reason}")
        self.filename = filename
        self.page_id = page_id
        self.reason = reason


class ConfigurationError(PublishError):
    """The page configuration is invalid; raised before any backend call."""

    def __init__(self, message: str, *, issues: Sequence[str] = ()) -> None:
        if issues:
            message = message + ":\n" + "\n".join(issues)
        super().__init__(message)
        self.issues = list(issues)


class RenderError(PublishError):
    """A page or macro template could not be rendered."""


class RetryExhaustedError(PublishError):
    """All attempts returned a result the retry condition rejected."""

    def __init__(self, attempts: int, last_result: Any, description: str = "operation") -> None:
        super().__init__(f"{description} did not produce an acceptable result after {attempts} attempts")
        self.attempts = attempts
        self.last_result = last_result


class PublishAbortedError(PublishError):
    """Publishing a page failed fatally.

    Carries the page identity, the state the publishing state machine was
    in and the titles of the pages that were skipped as a consequence.
    """

    def __init__(
        self,
        *,
        space_key: Optional[str],
        title: str,
        state: str,
        reason: str,
        skipped_pages: Sequence[str] = (),
    ) -> None:
        self.space_key = space_key
        self.title = title
        self.state = state
        self.reason = reason
        self.skipped_pages = list(skipped_pages)
        super().__init__(self._format())

    def _format(self) -> str:
        message = f"Failed to publish page {self.title!r} in space {self.space_key!r} during {self.state}: {self.reason}"
        if self.skipped_pages:
            message += f" (skipped {len(self.skipped_pages)} page(s): {', '.join(self.skipped_pages)})"
        else:
            message += " (no pages skipped)"
        return message

    def with_skipped(self, skipped_pages: Sequence[str]) -> "PublishAbortedError":
        error = PublishAbortedError(
            space_key=self.space_key,
            title=self.title,
            state=self.state,
            reason=self.reason,
            skipped_pages=skipped_pages,
        )
        error.__cause__ = self.__cause__
        return error
