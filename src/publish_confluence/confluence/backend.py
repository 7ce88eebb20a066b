"""Capability interface shared by the Confluence client and the dry-run backend."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from publish_confluence.confluence.models import Attachment, RemotePage
from publish_confluence.errors import ResourceNotFoundError, RetryExhaustedError
from publish_confluence.sync.retry import retry_with_backoff


class PageBackend(abc.ABC):
    """Find, create and update pages keyed by title within a space.

    Implementations must return ``None`` from ``find_page_by_title`` when no
    page matches and reserve exceptions for genuine failures.
    """

    logger: logging.Logger

    #: Attempts made while a parent page is not yet visible to title search.
    parent_lookup_attempts: int = 3
    #: Delay before the second parent lookup; doubles on every retry.
    parent_lookup_backoff: float = 2.0

    @property
    @abc.abstractmethod
    def base_url(self) -> str:
        """Prefix used to build attachment download links."""

    @abc.abstractmethod
    async def find_page_by_title(self, space_key: str, title: str) -> Optional[RemotePage]:
        ...

    @abc.abstractmethod
    async def create_page(
        self,
        space_key: str,
        title: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        ...

    @abc.abstractmethod
    async def update_page(self, page_id: str, title: str, content: str, version: int) -> RemotePage:
        """Replace title and content; ``version`` is the last observed version."""

    @abc.abstractmethod
    async def upload_attachment(self, page_id: str, filename: str, data: bytes) -> Attachment:
        ...

    @abc.abstractmethod
    async def list_attachments(self, page_id: str) -> list[Attachment]:
        ...

    async def default_parent_id(self, space_key: str) -> Optional[str]:
        """Parent used for new pages that do not name one."""

        return None

    async def resolve_parent_id(
        self,
        space_key: str,
        parent_title: Optional[str],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Optional[str]:
        if not parent_title:
            return await self.default_parent_id(space_key)

        try:
            parent = await retry_with_backoff(
                lambda: self.find_page_by_title(space_key, parent_title),
                max_attempts=self.parent_lookup_attempts,
                initial_backoff=self.parent_lookup_backoff,
                retry_condition=lambda page: page is None,
                retry_on=(),
                log=self.logger,
                sleep=sleep,
                description=f"parent page lookup for {parent_title!r}",
            )
        except RetryExhaustedError as exc:
            raise ResourceNotFoundError("Parent page", f"{parent_title} (space {space_key})") from exc
        return parent.id

    async def upsert_page(
        self,
        space_key: str,
        title: str,
        content: str,
        parent_page_title: Optional[str] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RemotePage:
        """Update the page titled ``title`` or create it under ``parent_page_title``."""

        existing = await self.find_page_by_title(space_key, title)
        if existing is not None:
            return await self.update_page(existing.id, title, content, existing.version)

        parent_id = await self.resolve_parent_id(space_key, parent_page_title, sleep=sleep)
        return await self.create_page(space_key, title, content, parent_id)

    async def aclose(self) -> None:
        """Release any resources held by the backend."""

    async def __aenter__(self) -> "PageBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
