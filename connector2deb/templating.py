#!/usr/bin/env python3
"""Template discovery, merging and rendering for the Debian staging tree."""

from __future__ import annotations

import logging
import os
import re
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional

from .utils import DiscoveryError, RenderError

TEMPLATE_MARKER = "_"
ANCHOR_SEGMENT = "templates"
PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.-]*)\s*(?::([^}]*?))?\s*\}\}")

logger = logging.getLogger("connector2deb.templating")


@dataclass(frozen=True)
class TemplateEntry:
    """A discovered file and where it lands inside the staging tree.

    ``destination_path`` is relative to the staging root.
    """

    source_path: Path
    destination_path: Path
    is_template: bool


class ResolvedTemplateSet:
    """Template entries keyed by destination, one entry per destination."""

    def __init__(self, entries: Iterable[TemplateEntry] = ()) -> None:
        self._entries: dict[Path, TemplateEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: TemplateEntry) -> None:
        """Insert an entry, replacing any entry with the same destination."""
        self._entries[entry.destination_path] = entry

    def get(self, destination: Path) -> Optional[TemplateEntry]:
        return self._entries.get(Path(destination))

    def __iter__(self) -> Iterator[TemplateEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, destination: object) -> bool:
        return destination in self._entries


def _anchor_relative(path: Path, root: Path) -> Path:
    """Strip everything up to and including the last ``templates`` segment.

    Only segments belonging to ``root`` are considered, so a ``templates``
    directory nested inside the template tree is preserved.
    """
    root_parts = root.parts
    anchor_index = None
    for index, part in enumerate(root_parts):
        if part == ANCHOR_SEGMENT:
            anchor_index = index
    if anchor_index is None:
        return path.relative_to(root)
    return Path(*path.parts[anchor_index + 1:])


def destination_for(path: Path, root: Path) -> tuple[Path, bool]:
    """Return the staging-relative destination and template flag for a file."""
    relative = _anchor_relative(path, root)
    name = relative.name
    is_template = name.startswith(TEMPLATE_MARKER) and len(name) > len(TEMPLATE_MARKER)
    if is_template:
        relative = relative.with_name(name[len(TEMPLATE_MARKER):])
    return relative, is_template


def discover_templates(root: Path, required: bool = True) -> list[TemplateEntry]:
    """Enumerate every regular file below ``root`` as a ``TemplateEntry``.

    An absent root yields no entries unless ``required`` is set.
    """
    root = Path(root).expanduser().resolve()
    if not root.exists():
        if required:
            raise DiscoveryError(f"Template root does not exist: {root}")
        logger.debug("No templates at %s", root)
        return []
    if not root.is_dir():
        raise DiscoveryError(f"Template root is not a directory: {root}")

    def _on_error(exc: OSError) -> None:
        raise DiscoveryError(f"Unable to read template root {root}: {exc}") from exc

    entries: list[TemplateEntry] = []
    for path in sorted(_walk_files(root, _on_error)):
        destination, is_template = destination_for(path, root)
        entries.append(TemplateEntry(path, destination, is_template))
    return entries


def _walk_files(root: Path, on_error) -> Iterator[Path]:
    for dirpath, _, filenames in os.walk(root, onerror=on_error):
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.is_file():
                yield path


def resolve_templates(override_root: Path, default_root: Path) -> ResolvedTemplateSet:
    """Merge package overrides over the bundled defaults.

    Defaults are inserted first; an override sharing a destination replaces
    the default entry.
    """
    defaults = discover_templates(default_root, required=True)
    overrides = discover_templates(override_root, required=False)

    resolved = ResolvedTemplateSet(defaults)
    for entry in overrides:
        if entry.destination_path in resolved:
            logger.debug("Override %s replaces default template", entry.destination_path)
        resolved.add(entry)
    return resolved


def substitute(text: str, data: Mapping[str, object]) -> str:
    """Replace ``{{ name }}`` placeholders with values from ``data``.

    Unknown names render as an empty string; ``{{ name:fallback }}``
    renders ``fallback`` when the value is missing or empty.
    """

    def _replace(match: re.Match) -> str:
        value = data.get(match.group(1))
        if value is None or value == "":
            return match.group(2) or ""
        return str(value)

    return PLACEHOLDER_RE.sub(_replace, text)


def render_template(entry: TemplateEntry, data: Mapping[str, object], stage_root: Path) -> Path:
    """Render or copy one entry below ``stage_root`` and return the written path."""
    target = stage_root / entry.destination_path
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        if not entry.is_template:
            shutil.copy2(entry.source_path, target)
            return target

        text = entry.source_path.read_text(encoding="utf-8")
        target.write_text(substitute(text, data), encoding="utf-8")
        shutil.copymode(entry.source_path, target)
    except (OSError, UnicodeDecodeError) as exc:
        raise RenderError(f"Failed to render {entry.source_path} -> {target}: {exc}") from exc
    return target


def render_templates(
    entries: Iterable[TemplateEntry],
    data: Mapping[str, object],
    stage_root: Path,
    workers: int = 4,
) -> list[Path]:
    """Render every entry, using a thread pool when ``workers`` > 1."""
    entries = list(entries)
    if workers <= 1 or len(entries) <= 1:
        return [render_template(entry, data, stage_root) for entry in entries]

    written: list[Path] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(render_template, entry, data, stage_root) for entry in entries]
        for future in as_completed(futures):
            written.append(future.result())
    return written
