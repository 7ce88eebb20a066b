"""Records persisted by the dry-run backend for every simulated page."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from publish_confluence.confluence.models import RemotePage

METADATA_FILENAME = "metadata.json"
CONTENT_FILENAME = "content.html"
ATTACHMENTS_DIRNAME = "attachments"


class PageMetadata(BaseModel):
    """Contents of ``metadata.json`` in a simulated page directory."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    space_key: str = Field(alias="spaceKey")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    version: int = 1
    attachments: dict[str, str] = Field(
        default_factory=dict,
        description="Attachment filename mapped to its path relative to the page directory",
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    def to_remote(self, body: str = "") -> RemotePage:
        return RemotePage(
            id=self.id,
            title=self.title,
            space_key=self.space_key,
            version=self.version,
            body=body,
            parent_id=self.parent_id,
        )


def read_metadata(directory: Path) -> Optional[PageMetadata]:
    """Load the metadata of ``directory`` or ``None`` if it holds no page."""

    metadata_file = directory / METADATA_FILENAME
    if not metadata_file.is_file():
        return None
    return PageMetadata.model_validate_json(metadata_file.read_text(encoding="utf-8"))


def write_metadata(directory: Path, metadata: PageMetadata) -> None:
    (directory / METADATA_FILENAME).write_text(metadata.to_json(), encoding="utf-8")
