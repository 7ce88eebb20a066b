"""Declarative page tree loaded from ``publish-confluence.json``."""

from __future__ import annotations

import json
import logging
import tomllib
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "publish-confluence.json"
DEFAULT_TEMPLATE_PATH = "./confluence-template.html"
DEFAULT_DIST_DIR = "./dist"

# Fields a child takes from its nearest ancestor unless it sets them itself.
INHERITED_FIELDS = (
    "space_key",
    "template_path",
    "macro_template_path",
    "included_files",
    "excluded_files",
)


class PageSpec(BaseModel):
    """One page of the declared tree and the pages nested below it."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    space_key: Optional[str] = Field(default=None, alias="spaceKey", min_length=1)
    title: str = Field(alias="pageTitle")
    parent_page_title: Optional[str] = Field(default=None, alias="parentPageTitle")
    template_path: str = Field(default=DEFAULT_TEMPLATE_PATH, alias="templatePath")
    macro_template_path: Optional[str] = Field(default=None, alias="macroTemplatePath")
    included_files: list[str] = Field(default_factory=list, alias="includedFiles")
    excluded_files: list[str] = Field(default_factory=list, alias="excludedFiles")
    dist_dir: str = Field(default=DEFAULT_DIST_DIR, alias="distDir")
    children: list["PageSpec"] = Field(default_factory=list, alias="childPages")

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("pageTitle is required and cannot be empty")
        return value

    @property
    def has_macro(self) -> bool:
        return self.macro_template_path is not None

    def inherit_from(self, parent: "PageSpec", *, parent_page_title: Optional[str] = None) -> "PageSpec":
        """Return the effective configuration of this page below ``parent``.

        Unset inheritable fields are copied from ``parent``; the title, the
        build output directory and the children always stay the child's own.
        """

        update = {
            name: getattr(parent, name)
            for name in INHERITED_FIELDS
            if name not in self.model_fields_set
        }
        if parent_page_title is not None:
            update["parent_page_title"] = parent_page_title
        return self.model_copy(update=update)

    def iter_effective(self) -> Iterator["PageSpec"]:
        """Yield this page and every descendant with inheritance applied, depth first."""

        yield self
        for child in self.children:
            yield from child.inherit_from(self, parent_page_title=self.title).iter_effective()


def resolve_dist_dirs(page: PageSpec, base_path: Path) -> PageSpec:
    """Anchor every relative ``dist_dir`` of the tree at ``base_path``."""

    dist_dir = Path(page.dist_dir)
    if not dist_dir.is_absolute():
        dist_dir = (base_path / dist_dir).resolve()
    children = [resolve_dist_dirs(child, base_path) for child in page.children]
    return page.model_copy(update={"dist_dir": str(dist_dir), "children": children})


def validate_tree(root: PageSpec) -> None:
    """Check constraints that only hold once inheritance is applied."""

    issues: list[str] = []
    seen: dict[tuple[Optional[str], str], str] = {}
    for index, page in enumerate(root.iter_effective()):
        location = "pageTitle" if index == 0 else f"childPages[{page.title}]"
        if not page.space_key:
            issues.append(f"- {location}.spaceKey: spaceKey is required (set it here or on an ancestor)")
        key = (page.space_key, page.title)
        if key in seen:
            issues.append(f"- {location}.pageTitle: duplicate title {page.title!r} in space {page.space_key!r}")
        seen[key] = location
    if issues:
        raise ConfigurationError("Invalid configuration", issues=issues)


def _format_validation_error(exc: ValidationError) -> list[str]:
    issues = []
    for issue in exc.errors():
        path = ".".join(str(part) for part in issue["loc"]) or "<root>"
        issues.append(f"- {path}: {issue['msg']}")
    return issues


def _project_name(directory: Path) -> Optional[str]:
    pyproject = directory / "pyproject.toml"
    if not pyproject.is_file():
        return None
    with pyproject.open("rb") as handle:
        data = tomllib.load(handle)
    return data.get("project", {}).get("name")


def parse_page_tree(data: dict, *, base_path: Path) -> PageSpec:
    """Validate raw configuration ``data`` into an effective-ready page tree."""

    if not isinstance(data, dict):
        raise ConfigurationError("Invalid configuration", issues=["- <root>: expected a JSON object"])

    data = dict(data)
    if not data.get("pageTitle"):
        project_name = _project_name(base_path)
        if project_name:
            logger.debug("Using project name %r from pyproject.toml as page title", project_name)
            data["pageTitle"] = project_name

    try:
        root = PageSpec.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration. Please check your {CONFIG_FILENAME} file",
            issues=_format_validation_error(exc),
        ) from exc

    root = resolve_dist_dirs(root, base_path)
    validate_tree(root)
    return root


def load_page_tree(path: Path) -> PageSpec:
    """Load and validate the page tree stored at ``path``."""

    if not path.is_file():
        raise ConfigurationError(f"Configuration file {path} does not exist")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path.name}: {exc}") from exc

    logger.debug("Loaded configuration from %s", path)
    return parse_page_tree(data, base_path=path.parent.resolve())
