"""JSON and text serialisation of build results."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import markdown
from jinja2 import Environment, FileSystemLoader

from .logging import get_logger
from .models import (
    DEFAULT_FAIL_ON,
    Block,
    Callout,
    CodeBlock,
    CrossReference,
    DiagnosticKind,
    DiagnosticReport,
    ExampleBlock,
    Heading,
    InlineText,
    ListBlock,
    Paragraph,
    RawHtml,
    RenderedArtifact,
    ResolvedLink,
    UnknownDirective,
)
from .render.highlight import highlight
from .tree import PageNode, PageTree

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .orchestrator import BuildResult

logger = get_logger("serialize")

TREE_FILENAME = "tree.json"
DIAGNOSTICS_FILENAME = "diagnostics.json"
ASSETS_DIRNAME = "assets"

_TEMPLATES_DIR = Path(__file__).with_name("templates")


def tree_to_dict(tree: PageTree) -> Dict[str, Any]:
    """Return the page tree as plain data, pages in navigation order."""
    converter = _MarkdownConverter()
    pages: Dict[str, Any] = {}
    for node in tree.walk():
        pages[node.route] = _node_to_dict(node, converter)
    return {"root": tree.root.route, "pages": pages}


def report_to_dict(
    report: DiagnosticReport, fail_on: Sequence[DiagnosticKind] = DEFAULT_FAIL_ON
) -> Dict[str, Any]:
    return {
        "failed": report.failed(fail_on),
        "aborted": report.aborted,
        "counts": report.counts(),
        "diagnostics": [item.to_dict() for item in report.sorted()],
    }


def render_report(
    report: DiagnosticReport,
    fail_on: Sequence[DiagnosticKind] = DEFAULT_FAIL_ON,
    *,
    pages: Optional[int] = None,
) -> str:
    """Render the human-readable diagnostic report."""
    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template("report.txt.j2")
    return template.render(report=report_to_dict(report, fail_on), pages=pages).rstrip() + "\n"


def write_output(result: "BuildResult", output_dir: Path) -> List[Path]:
    """Write ``tree.json``, ``diagnostics.json`` and example images to ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []

    tree_path = output_dir / TREE_FILENAME
    if result.tree is not None:
        tree_path.write_text(_dumps(tree_to_dict(result.tree)), encoding="utf-8")
        written.append(tree_path)
        written.extend(_write_assets(result.tree, output_dir / ASSETS_DIRNAME))
    elif tree_path.exists():
        tree_path.unlink()

    diagnostics_path = output_dir / DIAGNOSTICS_FILENAME
    diagnostics_path.write_text(
        _dumps(report_to_dict(result.report, result.config.fail_on if result.config else DEFAULT_FAIL_ON)),
        encoding="utf-8",
    )
    written.append(diagnostics_path)
    logger.info("Wrote %d files to %s", len(written), output_dir)
    return written


def asset_name(artifact: RenderedArtifact, index: int) -> str:
    image = artifact.images[index]
    return f"{artifact.key}-{index}.{image.format}"


# ----------------------------------------------------------------------
# Internal helpers


class _MarkdownConverter:
    """Python-Markdown wrapper; one instance is not shared across threads."""

    def __init__(self) -> None:
        self._md = markdown.Markdown(extensions=["tables", "sane_lists"])

    def block(self, text: str) -> str:
        self._md.reset()
        return self._md.convert(text)

    def inline(self, text: str) -> str:
        html = self.block(text).strip()
        if html.startswith("<p>") and html.endswith("</p>"):
            html = html[3:-4]
        return html


def _node_to_dict(node: PageNode, converter: _MarkdownConverter) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "title": node.title,
        "kind": node.kind,
        "description": node.description,
        "depth": node.depth,
        "parent": node.parent,
        "children": list(node.children),
        "previous": node.previous,
        "next": node.next,
        "outline": [item.to_dict() for item in node.outline],
        "blocks": [_block_to_dict(block, node, converter) for block in node.blocks],
    }
    if node.location is not None:
        payload["source"] = str(node.location)
    if node.symbol_id is not None:
        payload["symbol"] = dict(node.metadata)
    if node.see_also:
        payload["see_also"] = _segments(node.see_also, node.links)
    return payload


def _block_to_dict(block: Block, node: PageNode, converter: _MarkdownConverter) -> Dict[str, Any]:
    if isinstance(block, Heading):
        source = _markdown_source(block.content, node.links)
        return {
            "type": "heading",
            "level": block.level,
            "anchor": block.anchor,
            "inlines": _inline_segments(block.content, node.links),
            "html": f'<h{block.level} id="{block.anchor}">{converter.inline(source)}</h{block.level}>',
        }
    if isinstance(block, Paragraph):
        return {
            "type": "paragraph",
            "inlines": _inline_segments(block.content, node.links),
            "html": converter.block(_markdown_source(block.content, node.links)),
        }
    if isinstance(block, ListBlock):
        items = [
            {
                "inlines": _inline_segments(item, node.links),
                "html": converter.inline(_markdown_source(item, node.links)),
            }
            for item in block.items
        ]
        tag = "ol" if block.ordered else "ul"
        body = "".join(f"<li>{item['html']}</li>" for item in items)
        return {"type": "list", "ordered": block.ordered, "items": items, "html": f"<{tag}>{body}</{tag}>"}
    if isinstance(block, CodeBlock):
        return {
            "type": "code",
            "language": block.language,
            "text": block.text,
            "spans": [span.to_dict() for span in highlight(block.text, block.language)],
        }
    if isinstance(block, RawHtml):
        return {"type": "html", "html": block.html}
    if isinstance(block, Callout):
        return {
            "type": "callout",
            "style": block.style,
            "title": block.title,
            "body": [
                {
                    "inlines": _inline_segments(item, node.links),
                    "html": converter.block(_markdown_source(item, node.links)),
                }
                for item in block.body
            ],
        }
    if isinstance(block, ExampleBlock):
        return _example_to_dict(block, node.artifacts.get(block))
    if isinstance(block, UnknownDirective):
        return {"type": "directive", "name": block.name, "text": block.raw}
    raise TypeError(f"Unsupported block type: {type(block).__name__}")


def _example_to_dict(block: ExampleBlock, artifact: Optional[RenderedArtifact]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": "example",
        "display": block.display,
        "spans": [span.to_dict() for span in highlight(block.display, "typ")],
        "config": block.config.to_dict(),
        "line": block.location.line,
    }
    if artifact is None:
        payload["status"] = None
        return payload
    payload["hash"] = artifact.key
    payload["status"] = artifact.status.value
    payload["images"] = [
        {"file": f"{ASSETS_DIRNAME}/{asset_name(artifact, index)}", "width": image.width, "height": image.height}
        for index, image in enumerate(artifact.images)
    ]
    if artifact.error:
        payload["error"] = artifact.error
    return payload


def _inline_segments(
    inline: InlineText, links: Mapping[CrossReference, ResolvedLink]
) -> List[Dict[str, Any]]:
    segments: List[Dict[str, Any]] = []
    cursor = 0
    for reference in sorted(inline.references, key=lambda item: item.span):
        start, end = reference.span
        if start > cursor:
            segments.append({"text": inline.text[cursor:start]})
        segments.append(_reference_segment(reference, links))
        cursor = end
    if cursor < len(inline.text):
        segments.append({"text": inline.text[cursor:]})
    return segments


def _segments(
    references: Sequence[CrossReference], links: Mapping[CrossReference, ResolvedLink]
) -> List[Dict[str, Any]]:
    return [_reference_segment(reference, links) for reference in references]


def _reference_segment(
    reference: CrossReference, links: Mapping[CrossReference, ResolvedLink]
) -> Dict[str, Any]:
    link = links.get(reference)
    if link is None:
        return {"text": reference.text}
    return {"text": link.display, "href": link.href, "target": link.target_id}


def _markdown_source(inline: InlineText, links: Mapping[CrossReference, ResolvedLink]) -> str:
    pieces: List[str] = []
    for segment in _inline_segments(inline, links):
        href = segment.get("href")
        if href is None:
            pieces.append(segment["text"])
        else:
            pieces.append(f"[{segment['text']}]({href})")
    return "".join(pieces)


def _write_assets(tree: PageTree, assets_dir: Path) -> List[Path]:
    written: List[Path] = []
    seen = set()
    for node in tree.walk():
        for artifact in node.artifacts.values():
            if artifact.key in seen:
                continue
            seen.add(artifact.key)
            for index, image in enumerate(artifact.images):
                assets_dir.mkdir(parents=True, exist_ok=True)
                target = assets_dir / asset_name(artifact, index)
                target.write_bytes(image.data)
                written.append(target)
    return written


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


__all__ = [
    "ASSETS_DIRNAME",
    "DIAGNOSTICS_FILENAME",
    "TREE_FILENAME",
    "asset_name",
    "render_report",
    "report_to_dict",
    "tree_to_dict",
    "write_output",
]
