"""Shared fixtures for the unit tests."""

import json
from pathlib import Path
from typing import Optional

import pytest

from publish_confluence.errors import PageAlreadyExistsError
from publish_confluence.local.repository import LocalRepository
from publish_confluence.pages import PageSpec, parse_page_tree
from publish_confluence.sync.renderer import RenderContext


class RecordingRenderer:
    """Renderer that records every context and emits easily inspected markup."""

    def __init__(self) -> None:
        self.calls: list[tuple[PageSpec, RenderContext]] = []

    def render(self, page: PageSpec, context: RenderContext) -> str:
        self.calls.append((page, context))
        attachments = ",".join(context.attachments)
        return f"<p>{context.title}|{context.page_id}|{context.base_url}|{attachments}|{page.template_path}</p>"

    def contexts_for(self, title: str) -> list[RenderContext]:
        return [context for _, context in self.calls if context.title == title]


class RacingRepository(LocalRepository):
    """Simulated backend where another publisher wins the create for ``racing_titles``.

    The competing page becomes visible to searches only after
    ``invisible_searches`` further lookups.
    """

    def __init__(self, root: Path, *, racing_titles: set[str], invisible_searches: int = 0) -> None:
        super().__init__(root)
        self.racing_titles = set(racing_titles)
        self.invisible_searches = invisible_searches
        self.create_calls: list[str] = []
        self._raced: set[str] = set()

    async def create_page(self, space_key: str, title: str, content: str, parent_id: Optional[str] = None):
        self.create_calls.append(title)
        if title not in self.racing_titles:
            return await super().create_page(space_key, title, content, parent_id)
        await super().create_page(space_key, title, "<p>published by someone else</p>", parent_id)
        self._raced.add(title)
        raise PageAlreadyExistsError(space_key, title)

    async def find_page_by_title(self, space_key: str, title: str):
        if title in self._raced and self.invisible_searches > 0:
            self.invisible_searches -= 1
            return None
        return await super().find_page_by_title(space_key, title)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def dry_run_dir(tmp_path) -> Path:
    return tmp_path / "dry-run"


@pytest.fixture
def repository(dry_run_dir) -> LocalRepository:
    return LocalRepository(dry_run_dir)


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """Project directory with a build output folder and templates."""

    project = tmp_path / "project"
    dist = project / "dist"
    (dist / "assets").mkdir(parents=True)
    (dist / "app.js").write_text("console.log('app');", encoding="utf-8")
    (dist / "assets" / "style.css").write_text("body { margin: 0; }", encoding="utf-8")
    (dist / "app.js.map").write_text("{}", encoding="utf-8")
    (project / "confluence-template.html").write_text(
        "<h1>{{ pageTitle }}</h1>{{ macro }}", encoding="utf-8"
    )
    (project / "macro-template.html").write_text(
        '<div id="app"></div>{{ styles }}{{ scripts }}', encoding="utf-8"
    )
    return project


def make_tree(data: dict, base_path: Path) -> PageSpec:
    return parse_page_tree(data, base_path=base_path)


def write_config(directory: Path, data: dict) -> Path:
    path = directory / "publish-confluence.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path
