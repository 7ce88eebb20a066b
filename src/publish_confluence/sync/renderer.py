"""Render page templates into Confluence storage format."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional, Protocol

import frontmatter
import yaml
from jinja2 import Environment, TemplateError
from markdown_it import MarkdownIt

from publish_confluence.errors import RenderError
from publish_confluence.pages import PageSpec


DEFAULT_PAGE_TEMPLATE = """<h1>{{ pageTitle }}</h1>

{{ macro }}

<hr/>
<p><em>Last updated: {{ currentDate }}</em></p>"""

DEFAULT_MACRO_TEMPLATE = """<div>
  <div id="app"></div>
  {{ styles }}
  {{ scripts }}
</div>"""

_BARE_AMPERSAND_RE = re.compile(r"&(?!(?:[a-zA-Z]+|#\d+|#x[a-fA-F0-9]+);)")


@dataclass(slots=True)
class RenderContext:
    """Dynamic values available to templates besides the page configuration."""

    title: str
    current_date: str = field(default_factory=lambda: date.today().isoformat())
    page_id: Optional[str] = None
    base_url: Optional[str] = None
    attachments: list[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        """Whether attachment URLs can be built."""

        return bool(self.page_id and self.base_url)


class Renderer(Protocol):
    def render(self, page: PageSpec, context: RenderContext) -> str:
        ...


def attachment_url(base_url: str, page_id: str, filename: str) -> str:
    return f"{base_url.rstrip('/')}/download/attachments/{page_id}/{filename}?api=v2"


def script_tags(attachments: list[str], base_url: str, page_id: str) -> str:
    return "\n".join(
        f'<script src="{attachment_url(base_url, page_id, name)}" defer></script>'
        for name in attachments
        if name.endswith(".js")
    )


def style_tags(attachments: list[str], base_url: str, page_id: str) -> str:
    return "\n".join(
        f'<link rel="stylesheet" href="{attachment_url(base_url, page_id, name)}">'
        for name in attachments
        if name.endswith(".css")
    )


def escape_for_confluence(content: str) -> str:
    """Escape ampersands that do not start an entity reference."""

    return _BARE_AMPERSAND_RE.sub("&amp;", content)


class ContentRenderer:
    """Default ``Renderer`` built on Jinja2 templates.

    Page templates ending in ``.md`` are converted from Markdown first; their
    optional YAML front matter provides additional template variables.
    """

    def __init__(self, base_path: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.base_path = base_path
        self.logger = logger or logging.getLogger(__name__)
        self._markdown = MarkdownIt("commonmark", {"html": True}).enable("table")
        self._environment = Environment(autoescape=False, keep_trailing_newline=True)

    def render(self, page: PageSpec, context: RenderContext) -> str:
        source, variables = self._load_page_template(page.template_path)
        macro = self.render_macro(page, context)
        values = {
            **variables,
            "pageTitle": context.title,
            "currentDate": context.current_date,
            "macro": macro,
        }
        if context.resolved:
            values["pageId"] = context.page_id
            values["baseUrl"] = context.base_url
        content = self._render_source(source, values, page.template_path)
        escaped = escape_for_confluence(content)
        if escaped != content:
            self.logger.debug("Special characters were escaped for Confluence compatibility")
        return escaped

    def render_macro(self, page: PageSpec, context: RenderContext) -> str:
        """Render the embedded application macro, or ``""`` without a macro template."""

        if page.macro_template_path is None:
            self.logger.debug("No macro template path provided, skipping macro generation")
            return ""

        source = self._read_template(page.macro_template_path, DEFAULT_MACRO_TEMPLATE)
        values: dict[str, object] = {"pageTitle": context.title, "currentDate": context.current_date}
        if context.resolved and context.attachments:
            values.update(
                scripts=script_tags(context.attachments, context.base_url, context.page_id),
                styles=style_tags(context.attachments, context.base_url, context.page_id),
                pageId=context.page_id,
                baseUrl=context.base_url,
            )
        else:
            values.update(scripts="", styles="")

        expanded = self._render_source(source, values, page.macro_template_path)
        return (
            f'<ac:structured-macro ac:name="html" ac:schema-version="1" ac:macro-id="{uuid.uuid4()}">\n'
            f"    <ac:plain-text-body><![CDATA[{expanded}]]></ac:plain-text-body>\n"
            "  </ac:structured-macro>"
        )

    # ------------------------------------------------------------------
    # Template loading
    # ------------------------------------------------------------------
    def _resolve(self, template_path: str) -> Path:
        path = Path(template_path)
        return path if path.is_absolute() else self.base_path / path

    def _read_template(self, template_path: str, default: str) -> str:
        path = self._resolve(template_path)
        try:
            source = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self.logger.debug("Template file %s not found, using default template", template_path)
            return default
        except UnicodeDecodeError as exc:
            raise RenderError(f"Template {template_path} is not valid UTF-8: {exc}") from exc
        self.logger.debug("Loaded template from %s", template_path)
        return source

    def _load_page_template(self, template_path: str) -> tuple[str, dict[str, object]]:
        source = self._read_template(template_path, DEFAULT_PAGE_TEMPLATE)
        if not template_path.lower().endswith(".md"):
            return source, {}

        self.logger.debug("Processing markdown template: %s", template_path)
        try:
            post = frontmatter.loads(source)
        except yaml.YAMLError as exc:
            raise RenderError(f"Invalid front matter in {template_path}: {exc}") from exc
        return self._markdown.render(post.content), dict(post.metadata)

    def _render_source(self, source: str, values: dict[str, object], template_path: str) -> str:
        try:
            return self._environment.from_string(source).render(**values)
        except TemplateError as exc:
            raise RenderError(f"Failed to render template {template_path}: {exc}") from exc
