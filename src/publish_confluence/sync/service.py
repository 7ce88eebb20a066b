"""Publishing workflow that pushes a declared page tree to a page backend."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from publish_confluence.config import PublishSettings
from publish_confluence.confluence.backend import PageBackend
from publish_confluence.confluence.models import RemotePage
from publish_confluence.errors import (
    AttachmentUploadError,
    ConfigurationError,
    PageAlreadyExistsError,
    PublishAbortedError,
    PublishError,
    ResourceNotFoundError,
    RetryExhaustedError,
    VersionConflictError,
)
from publish_confluence.pages import PageSpec

from .attachments import attachment_name, find_files_to_attach
from .renderer import RenderContext, Renderer
from .retry import retry_with_backoff


class PublishState(str, enum.Enum):
    """Steps a single page goes through while it is published."""

    SEARCHING = "SEARCHING"
    UPDATING = "UPDATING"
    CREATING = "CREATING"
    RACE_RECOVERY = "RACE_RECOVERY"
    ATTACHING = "ATTACHING"
    RERENDERING = "RERENDERING"
    FINAL_UPDATE = "FINAL_UPDATE"
    RECURSING = "RECURSING"
    DONE = "DONE"


@dataclass(slots=True)
class PublishedPage:
    """Outcome of publishing one page."""

    spec: PageSpec
    page: RemotePage
    action: str
    content: str
    attachments: list[str] = field(default_factory=list)
    failed_attachments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PageFailure:
    """A page that failed fatally while the run continued."""

    spec: PageSpec
    state: PublishState
    error: PublishAbortedError

    @property
    def skipped_pages(self) -> list[str]:
        return self.error.skipped_pages


@dataclass(slots=True)
class PublishResult:
    """Report produced after a publishing run."""

    pages: list[PublishedPage] = field(default_factory=list)
    failures: list[PageFailure] = field(default_factory=list)

    @property
    def processed_pages(self) -> int:
        return len(self.pages)

    @property
    def created_pages(self) -> int:
        return sum(1 for page in self.pages if page.action == "created")

    @property
    def updated_pages(self) -> int:
        return sum(1 for page in self.pages if page.action == "updated")

    @property
    def failed_attachments(self) -> list[str]:
        return [name for page in self.pages for name in page.failed_attachments]

    @property
    def succeeded(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class _PageProgress:
    spec: PageSpec
    state: PublishState = PublishState.SEARCHING


class PublishService:
    """Publish a page tree, creating or updating every page by title.

    Pages are handled one at a time, root first, each child only after its
    parent is fully published. Every page runs through the same states:
    a search decides between update and create; a create that collides with
    a page the search did not see yet falls back to race recovery; pages with
    an embedded application get their build output attached, and freshly
    created ones are rendered a second time once the page id and the
    attachment URLs are known.
    """

    def __init__(
        self,
        backend: PageBackend,
        renderer: Renderer,
        *,
        settings: Optional[PublishSettings] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.renderer = renderer
        self.settings = settings or PublishSettings()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._order: list[str] = []
        self._position = 0

    async def publish(self, root: PageSpec) -> PublishResult:
        """Publish ``root`` and all of its descendants.

        Raises:
            PublishAbortedError: A page failed fatally and ``fail_fast`` is
                set. The error lists every page that was not processed.
        """

        self._order = [page.title for page in root.iter_effective()]
        self._position = 0
        result = PublishResult()

        self.logger.info("Publishing %d page(s) starting at %r", len(self._order), root.title)
        await self._publish_subtree(root, result)
        self.logger.info(
            "Published %d page(s): %d created, %d updated, %d failed",
            result.processed_pages,
            result.created_pages,
            result.updated_pages,
            len(result.failures),
        )
        return result

    # ------------------------------------------------------------------
    # Tree traversal
    # ------------------------------------------------------------------
    async def _publish_subtree(self, page: PageSpec, result: PublishResult) -> None:
        self._position += 1
        progress = _PageProgress(page)
        try:
            published = await self._publish_page(progress)
        except PublishAbortedError as exc:
            if self.settings.fail_fast:
                raise exc.with_skipped(self._order[self._position:])

            descendants = [descendant.title for descendant in page.iter_effective()][1:]
            self._position += len(descendants)
            error = exc.with_skipped(descendants)
            self.logger.error("%s", error)
            result.failures.append(PageFailure(spec=page, state=progress.state, error=error))
            return

        result.pages.append(published)

        if page.children:
            progress.state = PublishState.RECURSING
            self.logger.info('Publishing %d child page(s) under "%s"', len(page.children), page.title)
            for child in page.children:
                await self._publish_subtree(child.inherit_from(page, parent_page_title=page.title), result)

        progress.state = PublishState.DONE

    async def _publish_page(self, progress: _PageProgress) -> PublishedPage:
        page = progress.spec
        try:
            return await self._run(progress)
        except PublishAbortedError:
            raise
        except (PublishError, OSError) as exc:
            raise PublishAbortedError(
                space_key=page.space_key,
                title=page.title,
                state=progress.state.value,
                reason=str(exc),
            ) from exc

    # ------------------------------------------------------------------
    # Page state machine
    # ------------------------------------------------------------------
    async def _run(self, progress: _PageProgress) -> PublishedPage:
        page = progress.spec
        space_key = page.space_key
        if space_key is None:
            raise ConfigurationError(f"No space key configured for page {page.title!r}")

        self._enter(progress, PublishState.SEARCHING)
        self.logger.debug('Searching for existing page "%s" in space "%s"', page.title, space_key)
        existing = await self.backend.find_page_by_title(space_key, page.title)

        files: list[str] = []
        if page.has_macro:
            files = find_files_to_attach(page.dist_dir, page.included_files, page.excluded_files)
        names = [attachment_name(file) for file in files]

        created = False
        if existing is not None:
            self.logger.debug("Found existing page with ID %s", existing.id)
            remote, content = await self._update_existing(progress, existing, names)
        else:
            outcome = await self._create(progress)
            if outcome is None:
                remote, content = await self._recover_race(progress, names)
            else:
                created = True
                remote, content = outcome

        published = PublishedPage(
            spec=page,
            page=remote,
            action="created" if created else "updated",
            content=content,
        )

        if files:
            self._enter(progress, PublishState.ATTACHING)
            await self._upload_attachments(page, remote.id, files, published)

            if created:
                self._enter(progress, PublishState.RERENDERING)
                attached = {attachment.filename for attachment in await self.backend.list_attachments(remote.id)}
                resolved = [name for name in names if name in attached]
                content = self._render(page, page_id=remote.id, attachments=resolved)

                self._enter(progress, PublishState.FINAL_UPDATE)
                self.logger.debug("Updating page %s with resolved attachment links", remote.id)
                published.page = await self._update(page, remote.id, content, remote.version)
                published.content = content

        self.logger.info('Published "%s" (ID: %s, version: %d)', page.title, published.page.id, published.page.version)
        return published

    async def _update_existing(
        self,
        progress: _PageProgress,
        existing: RemotePage,
        names: list[str],
    ) -> tuple[RemotePage, str]:
        page = progress.spec
        self._enter(progress, PublishState.UPDATING)
        content = self._render(page, page_id=existing.id, attachments=names)
        remote = await self._update(page, existing.id, content, existing.version)
        return remote, content

    async def _create(self, progress: _PageProgress) -> Optional[tuple[RemotePage, str]]:
        """Create the page; ``None`` means the backend reported it as existing."""

        page = progress.spec
        self._enter(progress, PublishState.CREATING)
        content = self._render(page)
        parent_id = await self.backend.resolve_parent_id(
            page.space_key, page.parent_page_title, sleep=self._sleep
        )
        self.logger.debug('Creating new page "%s" in space "%s"', page.title, page.space_key)
        try:
            remote = await self.backend.create_page(page.space_key, page.title, content, parent_id)
        except PageAlreadyExistsError:
            self.logger.debug('Caught "page already exists" for "%s"; searching again', page.title)
            return None
        return remote, content

    async def _recover_race(self, progress: _PageProgress, names: list[str]) -> tuple[RemotePage, str]:
        page = progress.spec
        self._enter(progress, PublishState.RACE_RECOVERY)
        try:
            found = await retry_with_backoff(
                lambda: self.backend.find_page_by_title(page.space_key, page.title),
                max_attempts=self.settings.race_attempts,
                initial_backoff=self.settings.race_backoff,
                retry_condition=lambda remote: remote is None,
                retry_on=(),
                wait_first=True,
                sleep=self._sleep,
                log=self.logger,
                description=f"search for {page.title!r} after create conflict",
            )
        except RetryExhaustedError as exc:
            raise PublishAbortedError(
                space_key=page.space_key,
                title=page.title,
                state=progress.state.value,
                reason=(
                    "the page was reported as already existing but could not be found "
                    f"after {exc.attempts} searches"
                ),
            ) from exc

        self.logger.debug("Found existing page after create conflict with ID %s", found.id)
        return await self._update_existing(progress, found, names)

    async def _update(self, page: PageSpec, page_id: str, content: str, version: int) -> RemotePage:
        """Update with ``version``; after a conflict re-read the page and retry."""

        target_id = page_id
        target_version = version
        stale = False

        async def _attempt() -> RemotePage:
            nonlocal target_id, target_version, stale
            if stale:
                fresh = await self.backend.find_page_by_title(page.space_key, page.title)
                if fresh is None:
                    raise ResourceNotFoundError("Page", f"{page.title} (space {page.space_key})")
                self.logger.debug("Page %s moved to version %d; retrying update", fresh.id, fresh.version)
                target_id, target_version = fresh.id, fresh.version
            try:
                return await self.backend.update_page(target_id, page.title, content, target_version)
            except VersionConflictError:
                stale = True
                raise

        return await retry_with_backoff(
            _attempt,
            max_attempts=self.settings.conflict_attempts,
            initial_backoff=self.settings.race_backoff,
            retry_on=(VersionConflictError,),
            sleep=self._sleep,
            log=self.logger,
            description=f"update of {page.title!r}",
        )

    async def _upload_attachments(
        self,
        page: PageSpec,
        page_id: str,
        files: list[str],
        published: PublishedPage,
    ) -> None:
        self.logger.info("Uploading %d attachment(s) to page %s", len(files), page_id)
        dist_dir = Path(page.dist_dir)
        for file in files:
            name = attachment_name(file)
            path = dist_dir / file
            self.logger.debug("Attaching file: %s from %s", file, path)
            try:
                await self.backend.upload_attachment(page_id, name, path.read_bytes())
            except (PublishError, OSError) as exc:
                error = AttachmentUploadError(name, page_id, str(exc))
                self.logger.error("%s", error)
                published.failed_attachments.append(name)
                continue
            published.attachments.append(name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _render(
        self,
        page: PageSpec,
        *,
        page_id: Optional[str] = None,
        attachments: Optional[list[str]] = None,
    ) -> str:
        context = RenderContext(
            title=page.title,
            page_id=page_id,
            base_url=self.backend.base_url if page_id else None,
            attachments=list(attachments or []),
        )
        return self.renderer.render(page, context)

    def _enter(self, progress: _PageProgress, state: PublishState) -> None:
        progress.state = state
        self.logger.debug('"%s": %s', progress.spec.title, state.value)
