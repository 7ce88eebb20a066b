"""HTTP client wrapper for interacting with the Confluence REST API."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import httpx

from publish_confluence.errors import (
    AuthenticationError,
    BadRequestError,
    ConfluenceApiError,
    PageAlreadyExistsError,
    PermissionDeniedError,
    ResourceNotFoundError,
    TransportError,
    VersionConflictError,
)
from publish_confluence.sync.retry import retry_with_backoff

from .backend import PageBackend
from .models import Attachment, RemotePage
from .xhtml import parse_xhtml_errors


DEFAULT_EXPAND_FIELDS = ("version", "space", "ancestors")
PAGE_EXISTS_MARKER = "A page with this title already exists"
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(slots=True)
class ConfluenceAuth:
    """Authentication payload used by the Confluence client.

    A personal access ``token`` is sent as a bearer token; otherwise
    ``email`` and ``api_token`` are used for basic authentication.
    """

    token: Optional[str] = None
    email: Optional[str] = None
    api_token: Optional[str] = None

    def headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def basic(self) -> Optional[tuple[str, str]]:
        if not self.token and self.email and self.api_token:
            return (self.email, self.api_token)
        return None


class ConfluenceClient(PageBackend):
    """Async wrapper above the Confluence REST API implementing ``PageBackend``."""

    def __init__(
        self,
        *,
        base_url: str,
        auth: ConfluenceAuth,
        timeout: float = 30.0,
        verify: bool = True,
        request_attempts: int = 3,
        retry_backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Confluence base URL is required")
        if not auth.token and not (auth.email and auth.api_token):
            raise ValueError("Provide a token or an email and API token for authentication")

        self.logger = logger or logging.getLogger(__name__)
        self._base_url = base_url.rstrip("/")
        self._request_attempts = request_attempts
        self._retry_backoff = retry_backoff
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/rest/api/",
            timeout=timeout,
            verify=verify,
            auth=auth.basic(),
            transport=transport,
            headers={
                "Accept": "application/json",
                "X-Atlassian-Token": "nocheck",
                **auth.headers(),
            },
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        async def _send() -> httpx.Response:
            self.logger.debug("API Request: %s %s", method, url)
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                raise TransportError(f"{method} {url} failed: {exc}") from exc
            self.logger.debug("API Response: %s %s", response.status_code, response.reason_phrase)
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise TransportError(
                    f"{method} {url} returned {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                )
            return response

        response = await retry_with_backoff(
            _send,
            max_attempts=self._request_attempts,
            initial_backoff=self._retry_backoff,
            retry_on=(TransportError,),
            log=self.logger,
            description=f"{method} {url}",
        )
        self._raise_for_status(response)
        return response

    async def _request_json(self, method: str, url: str, **kwargs) -> dict:
        response = await self._request(method, url, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ConfluenceApiError(
                f"Confluence returned a non-JSON response to {method} {url}: {exc}",
                status_code=response.status_code,
            ) from exc

    async def _iter_paginated(self, url: str, *, params: Optional[dict] = None) -> AsyncIterator[dict]:
        next_url: Optional[str] = url
        next_params = params
        while next_url:
            data = await self._request_json("GET", next_url, params=next_params)
            for result in data.get("results", []):
                yield result
            next_link = data.get("_links", {}).get("next")
            if not next_link:
                break
            # Links are relative to the context path and already carry the query.
            next_url = self._base_url + next_link if next_link.startswith("/") else next_link
            next_params = None

    @staticmethod
    def _error_payload(response: httpx.Response) -> object:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error_message(response: httpx.Response, data: object) -> str:
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        return response.text or response.reason_phrase

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        data = self._error_payload(response)
        message = self._error_message(response, data)
        path = response.request.url.path
        detail = f"Confluence API Error ({status}) on {response.request.method} {path}: {message}"
        if status == 400:
            raise BadRequestError(detail, status_code=status, xhtml_errors=parse_xhtml_errors(data))
        if status == 401:
            raise AuthenticationError(detail, status_code=status)
        if status == 403:
            raise PermissionDeniedError(detail, status_code=status)
        if status == 404:
            raise ResourceNotFoundError("Resource", path)
        raise ConfluenceApiError(detail, status_code=status)

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_remote_page(data: dict, *, space_key: str = "") -> RemotePage:
        ancestors = data.get("ancestors") or []
        parent_id = str(ancestors[-1]["id"]) if ancestors else None
        body = data.get("body", {}).get("storage", {})
        return RemotePage(
            id=str(data["id"]),
            title=data["title"],
            space_key=data.get("space", {}).get("key") or space_key,
            version=data.get("version", {}).get("number", 1),
            body=body.get("value", ""),
            parent_id=parent_id,
        )

    @staticmethod
    def _to_attachment(data: dict, page_id: str) -> Attachment:
        extensions = data.get("extensions", {})
        return Attachment(
            id=str(data["id"]),
            filename=data["title"],
            page_id=page_id,
            media_type=extensions.get("mediaType", "application/octet-stream"),
            file_size=extensions.get("fileSize"),
        )

    # ------------------------------------------------------------------
    # Backend contract
    # ------------------------------------------------------------------
    async def find_page_by_title(self, space_key: str, title: str) -> Optional[RemotePage]:
        params = {
            "spaceKey": space_key,
            "title": title,
            "status": "current",
            "expand": ",".join(DEFAULT_EXPAND_FIELDS),
        }
        data = await self._request_json("GET", "content", params=params)
        for result in data.get("results", []):
            if result.get("title") == title:
                page = self._to_remote_page(result, space_key=space_key)
                self.logger.debug('Page found: "%s" (ID: %s)', title, page.id)
                return page
        self.logger.debug('Page not found: "%s" in space "%s"', title, space_key)
        return None

    async def get_page(self, page_id: str) -> RemotePage:
        data = await self._request_json(
            "GET",
            f"content/{page_id}",
            params={"expand": ",".join(DEFAULT_EXPAND_FIELDS + ("body.storage",))},
        )
        return self._to_remote_page(data)

    async def default_parent_id(self, space_key: str) -> Optional[str]:
        """Return the homepage of ``space_key``; new pages are created below it."""

        data = await self._request_json("GET", f"space/{space_key}", params={"expand": "homepage"})
        homepage = data.get("homepage") or {}
        if not homepage.get("id"):
            raise ResourceNotFoundError("Homepage of space", space_key)
        return str(homepage["id"])

    async def create_page(
        self,
        space_key: str,
        title: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        payload: dict[str, object] = {
            "type": "page",
            "title": title,
            "space": {"key": space_key},
            "body": {"storage": {"value": content, "representation": "storage"}},
        }
        if parent_id:
            payload["ancestors"] = [{"id": str(parent_id)}]

        try:
            data = await self._request_json("POST", "content", json=payload)
        except BadRequestError as exc:
            if PAGE_EXISTS_MARKER in str(exc):
                raise PageAlreadyExistsError(space_key, title) from exc
            raise
        page = self._to_remote_page(data, space_key=space_key)
        self.logger.info('Created page "%s" (ID: %s)', title, page.id)
        return page

    async def update_page(self, page_id: str, title: str, content: str, version: int) -> RemotePage:
        timestamp = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": str(page_id),
            "type": "page",
            "title": title,
            "version": {
                "number": version + 1,
                "message": f"Updated by publish-confluence at {timestamp}",
                "minorEdit": False,
            },
            "body": {"storage": {"value": content, "representation": "storage"}},
        }
        try:
            data = await self._request_json("PUT", f"content/{page_id}", json=payload)
        except ConfluenceApiError as exc:
            if exc.status_code == 409:
                raise VersionConflictError(page_id, version) from exc
            raise
        page = self._to_remote_page(data)
        self.logger.info('Updated page "%s" (ID: %s, version: %d)', title, page.id, page.version)
        return page

    async def list_attachments(self, page_id: str) -> list[Attachment]:
        attachments: list[Attachment] = []
        async for item in self._iter_paginated(
            f"content/{page_id}/child/attachment",
            params={"limit": 200, "expand": "version"},
        ):
            attachments.append(self._to_attachment(item, page_id))
        return attachments

    async def delete_content(self, content_id: str) -> None:
        await self._request("DELETE", f"content/{content_id}")

    async def upload_attachment(self, page_id: str, filename: str, data: bytes) -> Attachment:
        """Attach ``data`` to the page, replacing an attachment with the same name.

        The REST API cannot overwrite an attachment by name, so an existing one
        is deleted first; the download URL depends only on the filename and is
        therefore unchanged.
        """

        existing = next(
            (attachment for attachment in await self.list_attachments(page_id) if attachment.filename == filename),
            None,
        )
        if existing is not None:
            self.logger.debug("Attachment %s already exists (ID: %s); replacing it", filename, existing.id)
            await self.delete_content(existing.id)

        media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        timestamp = datetime.now(timezone.utc).isoformat()
        result = await self._request_json(
            "POST",
            f"content/{page_id}/child/attachment",
            files={"file": (filename, data, media_type)},
            data={"comment": f"Uploaded by publish-confluence at {timestamp}", "minorEdit": "true"},
        )
        results = result.get("results") or ([result] if "id" in result else [])
        if not results:
            raise ConfluenceApiError(f"No attachment was created for {filename} on page {page_id}")
        attachment = self._to_attachment(results[0], page_id)
        self.logger.info("Uploaded attachment %s to page %s", filename, page_id)
        return attachment


def create_client(
    *,
    base_url: str,
    token: Optional[str] = None,
    email: Optional[str] = None,
    api_token: Optional[str] = None,
    verify: bool = True,
    timeout: float = 30.0,
    request_attempts: int = 3,
    logger: Optional[logging.Logger] = None,
) -> ConfluenceClient:
    auth = ConfluenceAuth(token=token, email=email, api_token=api_token)
    return ConfluenceClient(
        base_url=base_url,
        auth=auth,
        timeout=timeout,
        verify=verify,
        request_attempts=request_attempts,
        logger=logger,
    )
