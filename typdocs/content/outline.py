"""Heading anchors and page outlines."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set, Tuple

from ..models import Block, Heading, InlineText

_STRIP_PATTERN = re.compile(r"[^\w\s-]")


def slugify(title: str) -> str:
    """Return a GitHub-style anchor slug for a heading title."""
    slug = title.strip().lower()
    slug = _STRIP_PATTERN.sub("", slug)
    slug = re.sub(r"\s", "-", slug)
    return slug


def plain_text(inline: InlineText) -> str:
    """Render inline text with reference tokens replaced by their display text."""
    pieces: List[str] = []
    cursor = 0
    for reference in inline.references:
        start, end = reference.span
        pieces.append(inline.text[cursor:start])
        pieces.append(reference.text)
        cursor = end
    pieces.append(inline.text[cursor:])
    return "".join(pieces).replace("`", "")


class AnchorAllocator:
    """Hands out unique anchors, suffixing repeats with ``-1``, ``-2``..."""

    def __init__(self) -> None:
        self._seen: Dict[str, int] = {}
        self.allocated: Set[str] = set()

    def allocate(self, slug: str) -> str:
        base = slug or "section"
        count = self._seen.get(base, 0)
        anchor = base if count == 0 else f"{base}-{count}"
        while anchor in self.allocated:
            count += 1
            anchor = f"{base}-{count}"
        self._seen[base] = count + 1
        self.allocated.add(anchor)
        return anchor

    def reserve(self, anchor: str) -> None:
        self.allocated.add(anchor)


@dataclass(frozen=True)
class OutlineItem:
    anchor: str
    title: str
    level: int
    children: Tuple["OutlineItem", ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "anchor": self.anchor,
            "title": self.title,
            "children": [child.to_dict() for child in self.children],
        }


class OutlineBuilder:
    """Builds page outlines up to level three."""

    def __init__(self, min_level: int = 2, max_level: int = 3) -> None:
        self.min_level = min_level
        self.max_level = max_level

    def build(self, blocks: Iterable[Block]) -> List[OutlineItem]:
        headings = [
            block
            for block in blocks
            if isinstance(block, Heading) and self.min_level <= block.level <= self.max_level
        ]
        items, _ = self._nest(headings, 0, self.min_level)
        return items

    def _nest(
        self, headings: List[Heading], index: int, level: int
    ) -> Tuple[List[OutlineItem], int]:
        items: List[OutlineItem] = []
        while index < len(headings):
            heading = headings[index]
            if heading.level < level:
                break
            index += 1
            children: List[OutlineItem] = []
            if index < len(headings) and headings[index].level > heading.level:
                children, index = self._nest(headings, index, headings[index].level)
            items.append(
                OutlineItem(
                    anchor=heading.anchor,
                    title=plain_text(heading.content),
                    level=heading.level,
                    children=tuple(children),
                )
            )
        return items, index


__all__ = ["AnchorAllocator", "OutlineBuilder", "OutlineItem", "plain_text", "slugify"]
