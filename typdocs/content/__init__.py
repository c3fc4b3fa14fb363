"""Markdown content parsing for guide pages and symbol details."""

from .outline import AnchorAllocator, OutlineBuilder, OutlineItem, plain_text, slugify
from .pages import discover_sources, load_page, normalize_route, parent_route, route_for
from .parser import (
    BodyParser,
    MalformedFrontMatter,
    ParsedDocument,
    parse,
    parse_body,
    parse_example_options,
    scan_references,
    split_front_matter,
)

__all__ = [
    "AnchorAllocator",
    "BodyParser",
    "MalformedFrontMatter",
    "OutlineBuilder",
    "OutlineItem",
    "ParsedDocument",
    "discover_sources",
    "load_page",
    "normalize_route",
    "parent_route",
    "parse",
    "parse_body",
    "parse_example_options",
    "plain_text",
    "route_for",
    "scan_references",
    "slugify",
]
