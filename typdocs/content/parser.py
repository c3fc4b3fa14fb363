"""Markdown and front-matter parsing into located content blocks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import yaml

from ..models import (
    Block,
    Callout,
    CodeBlock,
    CrossReference,
    ExampleBlock,
    Heading,
    InlineText,
    ListBlock,
    Paragraph,
    RawHtml,
    ReferenceKind,
    RenderConfig,
    SourceLocation,
    UnknownDirective,
    block_references,
)
from .outline import AnchorAllocator, plain_text, slugify

_FENCE = re.compile(r"^ {0,3}(`{3,}|~{3,})\s*(.*)$")
_HEADING = re.compile(r"^ {0,3}(#{1,6})\s+(.*?)(?:\s+#+)?\s*$")
_EXPLICIT_ANCHOR = re.compile(r"\s*\{#([\w-]+)\}\s*$")
_LIST_ITEM = re.compile(r"^ {0,3}([-*+]|\d{1,9}[.)])\s+(.*)$")
_DIRECTIVE_OPEN = re.compile(r"^ {0,3}:::\s*([A-Za-z][\w-]*)\s*(.*)$")
_DIRECTIVE_CLOSE = re.compile(r"^ {0,3}:::\s*$")
_HTML_START = re.compile(r"^ {0,3}<(?:/?[A-Za-z][\w-]*[\s/>]|/?[A-Za-z][\w-]*$|!--)")
_CODE_SPAN = re.compile(r"(`+)(.+?)\1", re.DOTALL)
_BRACKET = re.compile(r"\[([^\[\]\n]+)\]")
_LINK_TARGET = re.compile(r"""\(\s*<?([^()\s<>]*)>?(?:\s+(?:'[^']*'|"[^"]*"))?\s*\)""")
_TASK_MARKERS = {"x", "X"}

_CALLOUT_STYLES = {"info", "note", "tip", "warning"}
_EXAMPLE_MODES = {"markup", "code", "math"}
_EXTERNAL_PREFIXES = ("http://", "https://", "mailto:", "ftp://")
_HIDDEN_LINE = ">>>"
_DISPLAY_ONLY_LINE = "<<<"


class MalformedFrontMatter(ValueError):
    """Raised when a page header is not a valid YAML mapping."""

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.line = line


@dataclass
class ParsedDocument:
    front_matter: Dict[str, Any]
    blocks: List[Block]
    anchors: Set[str] = field(default_factory=set)

    @property
    def references(self) -> List[CrossReference]:
        return list(block_references(self.blocks))


def parse(source_text: str, *, source: str = "<string>") -> ParsedDocument:
    """Split a document into front matter and located body blocks."""
    front_matter, body, first_line = split_front_matter(source_text)
    parser = BodyParser(source, first_line=first_line)
    blocks = parser.parse(body)
    return ParsedDocument(front_matter=front_matter, blocks=blocks, anchors=set(parser.anchors.allocated))


def parse_body(
    text: str,
    *,
    source: str = "<string>",
    first_line: int = 1,
    anchors: Optional[AnchorAllocator] = None,
) -> List[Block]:
    """Parse a Markdown fragment that carries no front matter.

    Pass ``anchors`` to share heading anchors with other fragments of the same page.
    """
    return BodyParser(source, first_line=first_line, anchors=anchors).parse(text)


def split_front_matter(text: str) -> Tuple[Dict[str, Any], str, int]:
    """Return ``(front_matter, body, first_body_line)`` for a document."""
    normalized = _normalize_newlines(text).lstrip("\ufeff")
    lines = normalized.split("\n")
    if not lines or lines[0].strip() != "---":
        return {}, normalized, 1

    closing = None
    for index in range(1, len(lines)):
        if lines[index].strip() in {"---", "..."}:
            closing = index
            break
    if closing is None:
        raise MalformedFrontMatter("Front matter is not terminated by '---'", line=1)

    header = "\n".join(lines[1:closing])
    try:
        loaded = yaml.safe_load(header) if header.strip() else {}
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 2 if mark is not None else 1
        raise MalformedFrontMatter(f"Invalid YAML in front matter: {_first_line(exc)}", line=line) from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise MalformedFrontMatter("Front matter must be a mapping", line=1)
    body = "\n".join(lines[closing + 1 :])
    return {str(key): value for key, value in loaded.items()}, body, closing + 2


class BodyParser:
    """Line-based block scanner that keeps the source line of every block."""

    def __init__(
        self, source: str, *, first_line: int = 1, anchors: Optional[AnchorAllocator] = None
    ) -> None:
        self.source = source
        self.first_line = first_line
        self.anchors = anchors if anchors is not None else AnchorAllocator()

    def parse(self, text: str) -> List[Block]:
        lines = _normalize_newlines(text).split("\n")
        blocks: List[Block] = []
        index = 0
        while index < len(lines):
            line = lines[index]
            if not line.strip():
                index += 1
                continue
            fence = _FENCE.match(line)
            if fence:
                block, index = self._fenced(lines, index, fence)
                blocks.append(block)
                continue
            directive = _DIRECTIVE_OPEN.match(line)
            if directive:
                block, index = self._directive(lines, index, directive)
                blocks.append(block)
                continue
            heading = _HEADING.match(line)
            if heading:
                blocks.append(self._heading(heading, index))
                index += 1
                continue
            if _LIST_ITEM.match(line):
                block, index = self._list(lines, index)
                blocks.append(block)
                continue
            if _HTML_START.match(line):
                block, index = self._html(lines, index)
                blocks.append(block)
                continue
            block, index = self._paragraph(lines, index)
            blocks.append(block)
        return blocks

    def _location(self, index: int) -> SourceLocation:
        return SourceLocation(self.source, self.first_line + index)

    def _heading(self, match: re.Match[str], index: int) -> Heading:
        level = len(match.group(1))
        text = match.group(2)
        explicit = _EXPLICIT_ANCHOR.search(text)
        location = self._location(index)
        if explicit:
            text = text[: explicit.start()]
        content = scan_references(text, location)
        if explicit:
            anchor = explicit.group(1)
            self.anchors.reserve(anchor)
        else:
            anchor = self.anchors.allocate(slugify(plain_text(content)))
        return Heading(level=level, content=content, anchor=anchor, location=location)

    def _fenced(self, lines: Sequence[str], start: int, match: re.Match[str]) -> Tuple[Block, int]:
        marker = match.group(1)
        info = match.group(2).strip()
        closing = re.compile(r"^ {0,3}" + re.escape(marker[0]) + "{" + str(len(marker)) + r",}\s*$")
        body: List[str] = []
        index = start + 1
        while index < len(lines):
            if closing.match(lines[index]):
                index += 1
                break
            body.append(lines[index])
            index += 1
        location = self._location(start)
        words = info.split()
        language = words[0] if words else None
        if language == "example":
            return _example_block(body, words[1:], location), index
        return CodeBlock(language=language, text="\n".join(body), location=location), index

    def _directive(self, lines: Sequence[str], start: int, match: re.Match[str]) -> Tuple[Block, int]:
        name = match.group(1).lower()
        argument = match.group(2).strip() or None
        depth = 1
        index = start + 1
        inner_start = index
        while index < len(lines):
            if _DIRECTIVE_CLOSE.match(lines[index]):
                depth -= 1
                if depth == 0:
                    break
            elif _DIRECTIVE_OPEN.match(lines[index]):
                depth += 1
            index += 1
        inner = list(lines[inner_start:index])
        end = min(index + 1, len(lines))
        location = self._location(start)
        if name in _CALLOUT_STYLES:
            body = tuple(
                scan_references(text, self._location(inner_start + offset))
                for offset, text in _split_paragraphs(inner)
            )
            return Callout(style=name, title=argument, body=body, location=location), end
        raw = "\n".join(lines[start:end])
        return UnknownDirective(name=name, raw=raw, location=location), end

    def _list(self, lines: Sequence[str], start: int) -> Tuple[ListBlock, int]:
        first = _LIST_ITEM.match(lines[start])
        assert first is not None
        ordered = first.group(1)[0].isdigit()
        items: List[InlineText] = []
        current: List[str] = []
        current_start = start
        index = start

        def flush() -> None:
            if current:
                items.append(
                    scan_references("\n".join(current), self._location(current_start), list_item=True)
                )

        while index < len(lines):
            line = lines[index]
            if not line.strip():
                following = _next_non_blank(lines, index)
                if following is None or not _LIST_ITEM.match(lines[following]):
                    break
                index = following
                continue
            item = _LIST_ITEM.match(line)
            if item:
                if item.group(1)[0].isdigit() != ordered:
                    break
                flush()
                current = [item.group(2).rstrip()]
                current_start = index
            elif _starts_block(line) and not line.startswith((" ", "\t")):
                break
            else:
                current.append(line.strip())
            index += 1
        flush()
        return ListBlock(ordered=ordered, items=tuple(items), location=self._location(start)), index

    def _html(self, lines: Sequence[str], start: int) -> Tuple[RawHtml, int]:
        index = start
        while index < len(lines) and lines[index].strip():
            index += 1
        return RawHtml(html="\n".join(lines[start:index]), location=self._location(start)), index

    def _paragraph(self, lines: Sequence[str], start: int) -> Tuple[Paragraph, int]:
        collected = [lines[start].strip()]
        index = start + 1
        while index < len(lines):
            line = lines[index]
            if not line.strip() or _starts_block(line):
                break
            collected.append(line.strip())
            index += 1
        location = self._location(start)
        return Paragraph(content=scan_references("\n".join(collected), location), location=location), index


def scan_references(text: str, location: SourceLocation, *, list_item: bool = False) -> InlineText:
    """Find cross-reference tokens in a run of prose.

    ``list_item`` marks ``text`` as the body of a list item, whose leading
    ``[x]`` is a task checkbox rather than a reference.
    """
    code_spans = [match.span() for match in _CODE_SPAN.finditer(text)]
    references: List[CrossReference] = []
    for match in _BRACKET.finditer(text):
        start, end = match.span()
        if _inside(start, code_spans):
            continue
        if start > 0 and text[start - 1] in {"\\", "!", "]"}:
            continue
        label = match.group(1)
        if label.startswith("^") or not label.strip():
            continue
        if list_item and label in _TASK_MARKERS and not text[:start].strip():
            continue
        following = text[end : end + 1]
        if following in {"[", ":"}:
            continue
        line_location = location.offset(text.count("\n", 0, start))
        if following == "(":
            target_match = _LINK_TARGET.match(text, end)
            if target_match is None:
                continue
            reference = _explicit_reference(
                label,
                target_match.group(1),
                text[start : target_match.end()],
                line_location,
                (start, target_match.end()),
            )
            if reference is not None:
                references.append(reference)
            continue
        target = label.strip().strip("`").strip()
        if not target:
            continue
        references.append(
            CrossReference(
                raw=match.group(0),
                target=target,
                kind=ReferenceKind.AUTO,
                location=line_location,
                display=label if label != target else None,
                span=(start, end),
            )
        )
    return InlineText(text=text, references=tuple(references))


def _explicit_reference(
    label: str, url: str, raw: str, location: SourceLocation, span: Tuple[int, int]
) -> Optional[CrossReference]:
    if not url or url.startswith(_EXTERNAL_PREFIXES):
        return None
    if url.startswith("$"):
        kind = ReferenceKind.SYMBOL
        target = url[1:]
    elif url.startswith("#"):
        kind = ReferenceKind.ANCHOR
        target = url
    else:
        # Relative targets resolve against the route of the carrying page.
        kind = ReferenceKind.PAGE
        target = url
    return CrossReference(
        raw=raw, target=target, kind=kind, location=location, display=label, span=span
    )


def _example_block(body: List[str], options: Sequence[str], location: SourceLocation) -> ExampleBlock:
    compiled: List[str] = []
    displayed: List[str] = []
    for line in body:
        if line.startswith(_HIDDEN_LINE):
            compiled.append(_strip_marker(line, _HIDDEN_LINE))
        elif line.startswith(_DISPLAY_ONLY_LINE):
            displayed.append(_strip_marker(line, _DISPLAY_ONLY_LINE))
        else:
            compiled.append(line)
            displayed.append(line)
    return ExampleBlock(
        source="\n".join(compiled),
        display="\n".join(displayed),
        config=parse_example_options(options),
        location=location,
    )


def parse_example_options(options: Sequence[str]) -> RenderConfig:
    """Read the configuration payload of an example fence; unknown words are ignored."""
    mode = "markup"
    expect_error = False
    scale: Optional[float] = None
    width: Optional[str] = None
    height: Optional[str] = None
    for option in options:
        key, _, value = option.partition("=")
        key = key.strip().lower()
        value = value.strip().strip("\"'")
        if key in {"error", "fails", "expect-error"}:
            expect_error = value.lower() not in {"false", "no", "0"} if value else True
        elif key in _EXAMPLE_MODES and not value:
            mode = key
        elif key == "mode" and value in _EXAMPLE_MODES:
            mode = value
        elif key == "scale":
            try:
                parsed = float(value)
            except ValueError:
                continue
            if parsed > 0:
                scale = parsed
        elif key == "width" and value:
            width = value
        elif key == "height" and value:
            height = value
    return RenderConfig(mode=mode, expect_error=expect_error, scale=scale, width=width, height=height)


def _strip_marker(line: str, marker: str) -> str:
    rest = line[len(marker) :]
    return rest[1:] if rest.startswith(" ") else rest


def _split_paragraphs(lines: Sequence[str]) -> List[Tuple[int, str]]:
    chunks: List[Tuple[int, str]] = []
    current: List[str] = []
    current_start = 0
    for offset, line in enumerate(lines):
        if line.strip():
            if not current:
                current_start = offset
            current.append(line.strip())
        elif current:
            chunks.append((current_start, "\n".join(current)))
            current = []
    if current:
        chunks.append((current_start, "\n".join(current)))
    return chunks


def _starts_block(line: str) -> bool:
    return bool(
        _FENCE.match(line)
        or _HEADING.match(line)
        or _DIRECTIVE_OPEN.match(line)
        or _DIRECTIVE_CLOSE.match(line)
        or _LIST_ITEM.match(line)
    )


def _next_non_blank(lines: Sequence[str], index: int) -> Optional[int]:
    while index < len(lines):
        if lines[index].strip():
            return index
        index += 1
    return None


def _inside(position: int, spans: Sequence[Tuple[int, int]]) -> bool:
    return any(start <= position < end for start, end in spans)


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _first_line(exc: Exception) -> str:
    return str(exc).strip().splitlines()[0] if str(exc).strip() else exc.__class__.__name__


__all__ = [
    "BodyParser",
    "MalformedFrontMatter",
    "ParsedDocument",
    "parse",
    "parse_body",
    "parse_example_options",
    "scan_references",
    "split_front_matter",
]
