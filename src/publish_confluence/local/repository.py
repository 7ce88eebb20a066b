"""Local filesystem backend that simulates Confluence for dry runs."""

from __future__ import annotations

import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from publish_confluence.confluence.backend import PageBackend
from publish_confluence.confluence.models import Attachment, RemotePage
from publish_confluence.errors import ResourceNotFoundError, VersionConflictError

from .models import (
    ATTACHMENTS_DIRNAME,
    CONTENT_FILENAME,
    METADATA_FILENAME,
    PageMetadata,
    read_metadata,
    write_metadata,
)
from .naming import sanitize_dir_name


DRY_RUN_BASE_URL = "https://dry-run.confluence.example.com"
#: Names inside a page directory that belong to the page itself.
RESERVED_NAMES = frozenset({ATTACHMENTS_DIRNAME, METADATA_FILENAME, CONTENT_FILENAME})


class LocalRepository(PageBackend):
    """Persist simulated Confluence pages as a directory tree.

    Every space is a directory below ``root`` and every page a directory
    named after its sanitized title, nested inside its parent's directory::

        {root}/{space_key}/{title}/metadata.json
        {root}/{space_key}/{title}/content.html
        {root}/{space_key}/{title}/attachments/
        {root}/{space_key}/{title}/{child title}/...

    Lookups consult an in-memory cache first and fall back to walking the
    tree, so a later run against the same ``root`` rediscovers earlier pages
    purely from disk.
    """

    def __init__(
        self,
        root: Path,
        *,
        base_url: str = DRY_RUN_BASE_URL,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.root = root
        self.logger = logger or logging.getLogger(__name__)
        self._base_url = base_url.rstrip("/")
        self._pages: dict[tuple[str, str], PageMetadata] = {}
        self._directories: dict[str, Path] = {}
        self.root.mkdir(parents=True, exist_ok=True)
        self.logger.info("[DRY-RUN] Writing simulated pages to %s", self.root)

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # Backend contract
    # ------------------------------------------------------------------
    async def find_page_by_title(self, space_key: str, title: str) -> Optional[RemotePage]:
        key = (space_key, title)
        cached = self._pages.get(key)
        if cached is not None:
            directory = self._find_directory(cached.id)
            metadata = self._safe_read(directory) if directory else None
            if metadata is not None and metadata.title == title:
                self.logger.debug("[DRY-RUN] Found page: %s (ID: %s)", title, metadata.id)
                return metadata.to_remote(self._read_content(directory))
            self._pages.pop(key, None)

        space_dir = self.root / space_key
        if not space_dir.is_dir():
            self.logger.debug("[DRY-RUN] Space %s doesn't exist yet", space_key)
            return None

        for directory, metadata in self._walk(space_dir):
            if metadata.title == title:
                self._remember(metadata, directory)
                self.logger.debug("[DRY-RUN] Found page from disk: %s (ID: %s)", title, metadata.id)
                return metadata.to_remote(self._read_content(directory))

        self.logger.debug("[DRY-RUN] Page not found: %s in space %s", title, space_key)
        return None

    async def create_page(
        self,
        space_key: str,
        title: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> RemotePage:
        space_dir = self.root / space_key
        space_dir.mkdir(parents=True, exist_ok=True)

        parent_directory = space_dir
        if parent_id:
            found = self._find_directory(parent_id)
            if found is None:
                self.logger.warning(
                    "[DRY-RUN] Parent page with ID %s not found. Creating page at root level.", parent_id
                )
            else:
                parent_directory = found

        metadata = PageMetadata(
            id=str(uuid.uuid4()),
            title=title,
            space_key=space_key,
            parent_id=parent_id,
            version=1,
        )
        directory = self._allocate_directory(parent_directory, title)
        (directory / ATTACHMENTS_DIRNAME).mkdir(exist_ok=True)
        (directory / CONTENT_FILENAME).write_text(content, encoding="utf-8")
        write_metadata(directory, metadata)
        self._remember(metadata, directory)

        self.logger.info("[DRY-RUN] Created page: %s (ID: %s)", title, metadata.id)
        return metadata.to_remote(content)

    async def update_page(self, page_id: str, title: str, content: str, version: int) -> RemotePage:
        directory, metadata = self._load(page_id)
        if metadata.version != version:
            raise VersionConflictError(page_id, version, metadata.version)

        previous_key = (metadata.space_key, metadata.title)
        title_changed = metadata.title != title
        metadata = metadata.model_copy(update={"title": title, "version": version + 1})

        (directory / CONTENT_FILENAME).write_text(content, encoding="utf-8")
        write_metadata(directory, metadata)
        if title_changed:
            directory = self._rename_directory(directory, title)

        self._pages.pop(previous_key, None)
        self._remember(metadata, directory)

        self.logger.info("[DRY-RUN] Updated page: %s (ID: %s, version: %d)", title, page_id, metadata.version)
        return metadata.to_remote(content)

    async def upload_attachment(self, page_id: str, filename: str, data: bytes) -> Attachment:
        directory, metadata = self._load(page_id)
        name = Path(filename).name

        attachments_dir = directory / ATTACHMENTS_DIRNAME
        attachments_dir.mkdir(exist_ok=True)
        (attachments_dir / name).write_bytes(data)

        attachments = dict(metadata.attachments)
        attachments[name] = f"{ATTACHMENTS_DIRNAME}/{name}"
        metadata = metadata.model_copy(update={"attachments": attachments})
        write_metadata(directory, metadata)
        self._remember(metadata, directory)

        self.logger.info("[DRY-RUN] Attached file: %s to page: %s (ID: %s)", name, metadata.title, page_id)
        return self._to_attachment(page_id, name, len(data))

    async def list_attachments(self, page_id: str) -> list[Attachment]:
        directory, metadata = self._load(page_id)
        attachments: list[Attachment] = []
        for name, relative in sorted(metadata.attachments.items()):
            path = directory / relative
            size = path.stat().st_size if path.is_file() else None
            attachments.append(self._to_attachment(page_id, name, size))
        self.logger.debug("[DRY-RUN] Listed %d attachments for page %s", len(attachments), page_id)
        return attachments

    # ------------------------------------------------------------------
    # Directory bookkeeping
    # ------------------------------------------------------------------
    def page_directory(self, page_id: str) -> Path:
        """Return the directory holding ``page_id``."""

        directory, _ = self._load(page_id)
        return directory

    def _load(self, page_id: str) -> tuple[Path, PageMetadata]:
        directory = self._find_directory(page_id)
        metadata = read_metadata(directory) if directory else None
        if directory is None or metadata is None:
            raise ResourceNotFoundError("Page", page_id)
        return directory, metadata

    def _find_directory(self, page_id: str) -> Optional[Path]:
        indexed = self._directories.get(page_id)
        if indexed is not None:
            metadata = self._safe_read(indexed)
            if metadata is not None and metadata.id == page_id:
                return indexed
            del self._directories[page_id]

        for space_dir in self._iter_subdirectories(self.root):
            for directory, metadata in self._walk(space_dir):
                if metadata.id == page_id:
                    self._directories[page_id] = directory
                    return directory
        return None

    def _walk(self, directory: Path) -> Iterator[tuple[Path, PageMetadata]]:
        for child in self._iter_subdirectories(directory):
            metadata = self._safe_read(child)
            if metadata is not None:
                yield child, metadata
            yield from self._walk(child)

    def _iter_subdirectories(self, directory: Path) -> Iterator[Path]:
        if not directory.is_dir():
            return
        for candidate in sorted(directory.iterdir()):
            if candidate.is_dir() and candidate.name != ATTACHMENTS_DIRNAME:
                yield candidate

    def _safe_read(self, directory: Path) -> Optional[PageMetadata]:
        try:
            return read_metadata(directory)
        except (OSError, ValidationError) as exc:
            self.logger.warning("[DRY-RUN] Ignoring unreadable %s in %s: %s", METADATA_FILENAME, directory, exc)
            return None

    def _allocate_directory(self, parent_directory: Path, title: str) -> Path:
        base = sanitize_dir_name(title)
        name = base
        counter = 2
        while True:
            candidate = parent_directory / name
            if name not in RESERVED_NAMES and (candidate.is_dir() or not candidate.exists()):
                existing = self._safe_read(candidate) if candidate.is_dir() else None
                if existing is None or existing.title == title:
                    candidate.mkdir(parents=True, exist_ok=True)
                    return candidate
            name = f"{base}-{counter}"
            counter += 1

    def _rename_directory(self, directory: Path, title: str) -> Path:
        target = directory.parent / sanitize_dir_name(title)
        if target == directory:
            return directory
        if target.name in RESERVED_NAMES or target.exists():
            self.logger.warning(
                '[DRY-RUN] Cannot rename directory to "%s" because it already exists', target.name
            )
            return directory
        try:
            directory.rename(target)
        except OSError as exc:
            self.logger.warning("[DRY-RUN] Failed to rename directory %s: %s", directory.name, exc)
            return directory

        # Descendant paths moved along with the directory.
        self._directories = {
            page_id: path for page_id, path in self._directories.items() if not path.is_relative_to(directory)
        }
        self.logger.debug('[DRY-RUN] Renamed directory from "%s" to "%s"', directory.name, target.name)
        return target

    def _remember(self, metadata: PageMetadata, directory: Path) -> None:
        self._pages[(metadata.space_key, metadata.title)] = metadata
        self._directories[metadata.id] = directory

    @staticmethod
    def _read_content(directory: Path) -> str:
        content_file = directory / CONTENT_FILENAME
        if not content_file.is_file():
            return ""
        return content_file.read_text(encoding="utf-8")

    @staticmethod
    def _to_attachment(page_id: str, name: str, size: Optional[int]) -> Attachment:
        media_type, _ = mimetypes.guess_type(name)
        return Attachment(
            id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{page_id}/{name}")),
            filename=name,
            page_id=page_id,
            media_type=media_type or "application/octet-stream",
            file_size=size,
        )
