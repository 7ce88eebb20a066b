"""Typed models for Confluence content interactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(slots=True)
class RemotePage:
    """A published page as seen by a backend."""

    id: str
    title: str
    space_key: str
    version: int
    body: str = ""
    parent_id: Optional[str] = None


@dataclass(slots=True)
class Attachment:
    """A file attached to a page."""

    id: str
    filename: str
    page_id: str
    media_type: str = "application/octet-stream"
    file_size: Optional[int] = None

    @property
    def download_path(self) -> str:
        return f"/download/attachments/{self.page_id}/{self.filename}"
