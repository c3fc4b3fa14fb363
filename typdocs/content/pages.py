"""Turns Markdown files under the content directory into guide pages."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional

from ..models import Heading, Page, SourceLocation
from .outline import plain_text
from .parser import parse

_EXCLUDED_DIRS = {".git", ".typdocs", "__pycache__", "node_modules"}


def normalize_route(route: str) -> str:
    """Return ``route`` as ``/a/b/`` (the root is ``/``)."""
    cleaned = route.strip().split("#", 1)[0]
    parts = [part for part in cleaned.replace("\\", "/").split("/") if part and part != "."]
    if not parts:
        return "/"
    return "/" + "/".join(parts) + "/"


def parent_route(route: str) -> Optional[str]:
    if route == "/":
        return None
    parts = route.strip("/").split("/")
    return normalize_route("/".join(parts[:-1]))


def route_for(relative: PurePosixPath) -> str:
    """Map ``guides/tables.md`` to ``/guides/tables/`` and ``index.md`` files to their folder."""
    parts = list(relative.with_suffix("").parts)
    if parts and parts[-1] == "index":
        parts = parts[:-1]
    return normalize_route("/".join(parts))


def discover_sources(content_root: Path) -> List[Path]:
    """Return Markdown files under ``content_root`` in a stable order."""
    if not content_root.is_dir():
        return []
    return sorted(_iter_markdown(content_root), key=lambda path: path.relative_to(content_root).as_posix())


def _iter_markdown(directory: Path) -> Iterator[Path]:
    for entry in directory.iterdir():
        if entry.is_dir():
            if entry.name in _EXCLUDED_DIRS or entry.name.startswith("."):
                continue
            yield from _iter_markdown(entry)
        elif entry.suffix.lower() == ".md":
            yield entry


def load_page(text: str, relative: PurePosixPath) -> Page:
    """Parse one Markdown source into a :class:`Page`.

    Raises :class:`~typdocs.content.parser.MalformedFrontMatter` when the
    header is invalid; the caller records it and carries on with other pages.
    """
    source = relative.as_posix()
    document = parse(text, source=source)
    front_matter = document.front_matter

    route = _as_str(front_matter.get("route"))
    route = normalize_route(route) if route else route_for(relative)
    declared_parent = _as_str(front_matter.get("parent"))

    return Page(
        route=route,
        title=_resolve_title(front_matter, document.blocks, relative),
        source=source,
        blocks=document.blocks,
        front_matter=front_matter,
        parent=normalize_route(declared_parent) if declared_parent else None,
        order=_as_int(front_matter.get("order")),
        description=_as_str(front_matter.get("description")),
        scope=_as_str(front_matter.get("module")),
        anchors=document.anchors,
        location=SourceLocation(source, 1),
    )


def _resolve_title(front_matter: Dict[str, Any], blocks: List[Any], relative: PurePosixPath) -> str:
    title = _as_str(front_matter.get("title"))
    if title:
        return title
    for block in blocks:
        if isinstance(block, Heading) and block.level == 1:
            return plain_text(block.content).strip()
    stem = relative.stem if relative.stem != "index" else (relative.parent.name or "Home")
    return stem.replace("-", " ").replace("_", " ").title()


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


__all__ = [
    "discover_sources",
    "load_page",
    "normalize_route",
    "parent_route",
    "route_for",
]
