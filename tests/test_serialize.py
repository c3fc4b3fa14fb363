"""Tests for typdocs.serialize."""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath

from typdocs.content.pages import load_page
from typdocs.models import (
    ArtifactStatus,
    Diagnostic,
    DiagnosticKind,
    DiagnosticReport,
    ExampleBlock,
    RasterImage,
    ReferenceKind,
    RenderedArtifact,
    ResolvedLink,
    SourceLocation,
    block_references,
)
from typdocs.orchestrator import BuildResult
from typdocs.registry import Registry
from typdocs.serialize import (
    DIAGNOSTICS_FILENAME,
    TREE_FILENAME,
    render_report,
    report_to_dict,
    tree_to_dict,
    write_output,
)
from typdocs.tree import PageTree, TreeBuilder

PAGE = """---
title: Guide
---
Read [the intro](/) and [missing].

- item with **bold**

```python
print("hi")
```

::: note Heads up
Careful.
:::

::: custom
kept as is
:::

```example
= Hello
```
"""


def _tree(artifact_status: ArtifactStatus = ArtifactStatus.OK) -> PageTree:
    page = load_page(PAGE, PurePosixPath("guide.md"))
    intro = next(ref for ref in block_references(page.blocks) if ref.target == "/")
    links = {
        intro: ResolvedLink(raw=intro.raw, target_id="/", route="/", display="the intro", kind=ReferenceKind.PAGE)
    }
    example = next(block for block in page.blocks if isinstance(block, ExampleBlock))
    images = (RasterImage(b"\x89PNG-data", 240, 80),) if artifact_status is ArtifactStatus.OK else ()
    artifacts = {
        example: RenderedArtifact("abc123", artifact_status, images=images, error=None if images else "boom")
    }
    return TreeBuilder(title="Docs").build([page], Registry(), links=links, artifacts=artifacts).tree


def test_tree_to_dict_lists_pages_in_navigation_order() -> None:
    data = tree_to_dict(_tree())

    assert data["root"] == "/"
    assert list(data["pages"]) == ["/", "/guide/"]
    guide = data["pages"]["/guide/"]
    assert guide["parent"] == "/"
    assert guide["previous"] == "/"
    assert guide["next"] is None
    assert guide["source"] == "guide.md:1"
    assert data["pages"]["/"]["children"] == ["/guide/"]


def test_block_shapes() -> None:
    paragraph, listing, code, callout, directive, example = tree_to_dict(_tree())["pages"]["/guide/"]["blocks"]

    assert paragraph["type"] == "paragraph"
    assert paragraph["inlines"] == [
        {"text": "Read "},
        {"text": "the intro", "href": "/", "target": "/"},
        {"text": " and "},
        {"text": "missing"},
        {"text": "."},
    ]
    assert paragraph["html"] == '<p>Read <a href="/">the intro</a> and missing.</p>'

    assert listing["type"] == "list"
    assert listing["items"][0]["html"] == "item with <strong>bold</strong>"

    assert code["type"] == "code"
    assert "".join(span["text"] for span in code["spans"]) == 'print("hi")'

    assert callout["type"] == "callout"
    assert callout["style"] == "note"
    assert callout["title"] == "Heads up"

    assert directive == {"type": "directive", "name": "custom", "text": "::: custom\nkept as is\n:::"}

    assert example["type"] == "example"
    assert example["hash"] == "abc123"
    assert example["status"] == "ok"
    assert example["images"] == [{"file": "assets/abc123-0.png", "width": 240, "height": 80}]


def test_failed_example_carries_its_error() -> None:
    blocks = tree_to_dict(_tree(ArtifactStatus.COMPILE_ERROR))["pages"]["/guide/"]["blocks"]

    example = blocks[-1]
    assert example["status"] == "compile-error"
    assert example["images"] == []
    assert example["error"] == "boom"


def _report() -> DiagnosticReport:
    return DiagnosticReport(
        [
            Diagnostic(DiagnosticKind.SCHEMA_ERROR, SourceLocation("reference/b.yml", 3), "bad kind"),
            Diagnostic(DiagnosticKind.BROKEN_REFERENCE, SourceLocation("a.md", 4), "Unknown reference 'x'"),
        ]
    )


def test_report_to_dict_sorts_and_counts() -> None:
    data = report_to_dict(_report())

    assert data["failed"] is True
    assert data["aborted"] is False
    assert data["counts"] == {"broken-reference": 1, "schema-error": 1}
    assert [item["location"] for item in data["diagnostics"]] == ["a.md:4", "reference/b.yml:3"]
    assert report_to_dict(_report(), fail_on=())["failed"] is False


def test_render_report_lists_diagnostics_and_outcome() -> None:
    text = render_report(_report(), pages=3)

    assert "a.md:4: broken-reference: Unknown reference 'x'" in text
    assert "Built 3 pages." in text
    assert "Diagnostics: broken-reference=1, schema-error=1" in text
    assert text.rstrip().endswith("Result: failed")


def test_render_report_for_clean_and_aborted_builds() -> None:
    clean = render_report(DiagnosticReport(), pages=1)
    aborted_report = DiagnosticReport()
    aborted_report.aborted = True

    assert "Built 1 page." in clean
    assert "No diagnostics." in clean
    assert clean.rstrip().endswith("Result: ok")
    assert "Build aborted" in render_report(aborted_report)


def test_write_output_writes_files_and_removes_stale_tree(tmp_path: Path) -> None:
    result = BuildResult(tree=_tree(), report=DiagnosticReport())

    written = write_output(result, tmp_path)

    assert tmp_path / TREE_FILENAME in written
    assert (tmp_path / "assets" / "abc123-0.png").read_bytes() == b"\x89PNG-data"
    assert json.loads((tmp_path / DIAGNOSTICS_FILENAME).read_text(encoding="utf-8"))["failed"] is False

    aborted = DiagnosticReport()
    aborted.aborted = True
    write_output(BuildResult(tree=None, report=aborted), tmp_path)

    assert not (tmp_path / TREE_FILENAME).exists()
