"""Discover build output files that should be attached to a page."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


def _match(root: Path, patterns: Iterable[str]) -> set[Path]:
    matched: set[Path] = set()
    for pattern in patterns:
        pattern = pattern.removeprefix("./")
        if not pattern:
            continue
        matched.update(path for path in root.glob(pattern) if path.is_file())
    return matched


def find_files_to_attach(dist_dir: Path | str, included: Iterable[str], excluded: Iterable[str] = ()) -> list[str]:
    """Return files below ``dist_dir`` matching ``included`` but not ``excluded``.

    Patterns are globs relative to ``dist_dir`` (``**`` crosses directories).
    Results are POSIX paths relative to ``dist_dir``, sorted. A missing
    directory yields an empty list.
    """

    root = Path(dist_dir)
    if not root.is_dir():
        logger.debug("Build output directory %s does not exist; nothing to attach", root)
        return []

    selected = _match(root, included) - _match(root, excluded)
    files = sorted(path.relative_to(root).as_posix() for path in selected)
    logger.debug("Found %d file(s) to attach in %s", len(files), root)
    return files


def attachment_name(relative_path: str) -> str:
    """Filename under which ``relative_path`` is uploaded."""

    return Path(relative_path).name
