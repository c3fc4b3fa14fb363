"""Tests for typdocs.orchestrator."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from tests._fixtures.collaborators import RecordingCompiler, RecordingRasterizer
from tests._fixtures.docs_builder import DocsBuilder
from typdocs.config import ConfigError
from typdocs.models import ArtifactStatus, DiagnosticKind, Heading, SourceLocation
from typdocs.orchestrator import Orchestrator
from typdocs.serialize import DIAGNOSTICS_FILENAME, TREE_FILENAME, tree_to_dict
from typdocs.stores import ArtifactCache

TEXT_MODULE = """
module: text
title: Text
details: |
  Style text with [font].
symbols:
  - name: font
    oneliner: Sets the font.
    details: |
      Pick a family.

      ```example
      #text(font: "Libertinus")[Hi]
      ```
    params:
      - name: family
        details: Works with [weight].
  - name: weight
    kind: type
"""

TABLES_PAGE = """
---
title: Tables
description: Arrange content in rows and columns.
---
# Tables

See [foo.bar] and [text.font].

## Usage

```example
= Hello
```
"""


def _orchestrator(compiler: RecordingCompiler, rasterizer: RecordingRasterizer) -> Orchestrator:
    return Orchestrator(compiler, rasterizer, cache=ArtifactCache())


@pytest.fixture
def docs(docs_builder: DocsBuilder) -> DocsBuilder:
    docs_builder.module("text.yml", TEXT_MODULE)
    docs_builder.page("index.md", "# Home\n\nStart with [the tables guide](/guides/tables).\n")
    docs_builder.page("guides/tables.md", TABLES_PAGE)
    return docs_builder


def test_broken_reference_is_reported_once_and_left_unlinked(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    result = _orchestrator(compiler, rasterizer).run(docs.path())

    (broken,) = result.report.of_kind(DiagnosticKind.BROKEN_REFERENCE)
    assert broken.location == SourceLocation("guides/tables.md", 7)
    assert "foo.bar" in broken.message
    assert result.exit_code == 1
    assert result.tree is not None

    page = tree_to_dict(result.tree)["pages"]["/guides/tables/"]
    paragraph = page["blocks"][1]
    assert paragraph["inlines"] == [
        {"text": "See "},
        {"text": "foo.bar"},
        {"text": " and "},
        {"text": "text.font", "href": "/reference/text/font/", "target": "text.font"},
        {"text": "."},
    ]
    assert 'href="/reference/text/font/"' in paragraph["html"]
    assert "foo.bar" in paragraph["html"]


def test_clean_build_links_pages_and_symbols(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.page("guides/tables.md", TABLES_PAGE.replace("[foo.bar]", "[weight]"))

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    assert list(result.report) == []
    assert result.exit_code == 0
    tree = result.tree
    assert tree is not None
    assert tree.root.title == "Home"
    assert tree["/guides/tables/"].description == "Arrange content in rows and columns."
    assert tree["/reference/text/font/"].parent == "/reference/text/"
    home_links = list(tree.root.links.values())
    assert [link.href for link in home_links] == ["/guides/tables/"]
    font = tree["/reference/text/font/"]
    assert {link.target_id for link in font.links.values()} == {"text.weight"}


def test_examples_are_rendered_and_attached_to_their_nodes(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    result = _orchestrator(compiler, rasterizer).run(docs.path())

    assert result.tree is not None
    assert compiler.count == 2
    (page_artifact,) = result.tree["/guides/tables/"].artifacts.values()
    (font_artifact,) = result.tree["/reference/text/font/"].artifacts.values()
    assert page_artifact.status is ArtifactStatus.OK
    assert font_artifact.status is ArtifactStatus.OK
    assert len(result.artifacts) == 2


def test_compile_failures_fail_the_build(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.page("guides/errors.md", '# Errors\n\n```example\n#panic("no")\n```\n')

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    (failure,) = result.report.of_kind(DiagnosticKind.COMPILE_FAILURE)
    assert failure.location == SourceLocation("guides/errors.md", 3)
    assert result.tree is not None
    assert result.exit_code == 1


def test_duplicate_routes_abort_without_a_tree(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer, tmp_path: Path
) -> None:
    docs.page("tables-again.md", "---\nroute: /guides/tables\n---\n# Again\n")
    output = tmp_path / "out"

    result = _orchestrator(compiler, rasterizer).build(docs.path(), output)

    assert result.report.aborted
    assert result.tree is None
    assert result.exit_code == 1
    (duplicate,) = result.report.of_kind(DiagnosticKind.DUPLICATE_ROUTE)
    assert duplicate.location.source == "tables-again.md"
    assert not (output / TREE_FILENAME).exists()
    diagnostics = json.loads((output / DIAGNOSTICS_FILENAME).read_text(encoding="utf-8"))
    assert diagnostics["aborted"] is True
    assert compiler.count == 0


def test_duplicate_ids_abort(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.module("copy.yml", "module: text\n")

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    assert result.tree is None
    assert result.report.of_kind(DiagnosticKind.DUPLICATE_ID)
    assert result.exit_code == 1


def test_page_claiming_a_symbol_route_aborts(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.page("font.md", "---\nroute: /reference/text/font\n---\n# Font\n")

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    assert result.tree is None
    (duplicate,) = result.report.of_kind(DiagnosticKind.DUPLICATE_ROUTE)
    assert duplicate.location.source == "reference/text.yml"


def test_malformed_pages_are_skipped(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.page("broken.md", "---\ntitle: [oops\n---\n# Broken\n")
    docs.page("guides/tables.md", TABLES_PAGE.replace("[foo.bar]", "[weight]"))

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    (malformed,) = result.report.of_kind(DiagnosticKind.MALFORMED_FRONT_MATTER)
    assert malformed.location.source == "broken.md"
    assert result.tree is not None
    assert "/broken/" not in result.tree
    assert result.exit_code == 0


def test_empty_root_aborts(compiler: RecordingCompiler, rasterizer: RecordingRasterizer, tmp_path: Path) -> None:
    result = _orchestrator(compiler, rasterizer).run(tmp_path)

    assert result.report.aborted
    assert result.tree is None


def test_builds_are_idempotent(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    cache = ArtifactCache()
    orchestrator = Orchestrator(compiler, rasterizer, cache=cache)

    first = orchestrator.run(docs.path())
    second = orchestrator.run(docs.path())

    assert first.tree == second.tree
    assert first.report.as_set() == second.report.as_set()
    assert tree_to_dict(first.tree) == tree_to_dict(second.tree)
    assert compiler.count == 2


def test_build_writes_tree_assets_and_diagnostics(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.write({"typdocs.yml": "title: Typst\noutput_dir: site\n"})

    result = _orchestrator(compiler, rasterizer).build(docs.path())

    output = docs.path() / "site"
    tree = json.loads((output / TREE_FILENAME).read_text(encoding="utf-8"))
    assert tree["root"] == "/"
    assert list(tree["pages"])[0] == "/"
    example = tree["pages"]["/guides/tables/"]["blocks"][-1]
    assert example["type"] == "example"
    assert example["status"] == "ok"
    (image,) = example["images"]
    assert (output / image["file"]).is_file()
    assert result.page_count == len(tree["pages"])
    diagnostics = json.loads((output / DIAGNOSTICS_FILENAME).read_text(encoding="utf-8"))
    assert diagnostics["counts"] == {"broken-reference": 1}


def test_invalid_config_raises(docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer) -> None:
    docs.write({"typdocs.yml": "title: [oops\n"})

    with pytest.raises(ConfigError):
        _orchestrator(compiler, rasterizer).run(docs.path())


def test_unreadable_metadata_is_skipped_and_reported(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    (docs.path() / "reference" / "bad.yml").write_bytes(b"module: \xff\xfe\n")

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    (unreadable,) = result.report.of_kind(DiagnosticKind.SCHEMA_ERROR)
    assert unreadable.location == SourceLocation("reference/bad.yml")
    assert "Unable to read metadata" in unreadable.message
    assert result.tree is not None
    assert "/reference/text/font/" in result.tree


def test_relative_links_are_checked(
    docs: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs.page("guides/styling.md", "# Styling\n\nSee [the guide](missing-page/) and [tables](../tables/).\n")

    result = _orchestrator(compiler, rasterizer).run(docs.path())

    messages = [item.message for item in result.report.of_kind(DiagnosticKind.BROKEN_REFERENCE)]
    assert any("missing-page/" in message for message in messages)
    assert result.tree is not None
    paragraph = tree_to_dict(result.tree)["pages"]["/guides/styling/"]["blocks"][1]
    assert {"text": "the guide"} in paragraph["inlines"]
    assert {"text": "tables", "href": "/guides/tables/", "target": "/guides/tables/"} in paragraph["inlines"]
    assert "missing-page" not in paragraph["html"]


def test_persistent_cache_keeps_only_live_examples(
    docs_builder: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs_builder.write({"typdocs.yml": "render:\n  cache_dir: .cache\n"})
    cache_dir = docs_builder.path() / ".cache"

    for run in range(3):
        docs_builder.page("index.md", f"# Home\n\n```example\n= Run {run}\n```\n")
        Orchestrator(compiler, rasterizer).run(docs_builder.path())

    index = json.loads((cache_dir / "index.json").read_text(encoding="utf-8"))
    assert len(index["entries"]) == 1
    images = sorted(path.name for path in cache_dir.iterdir() if path.name != "index.json")
    (entry,) = index["entries"].values()
    assert images == [image["file"] for image in entry["images"]]


def test_symbol_detail_headings_do_not_reuse_parameter_anchors(
    docs_builder: DocsBuilder, compiler: RecordingCompiler, rasterizer: RecordingRasterizer
) -> None:
    docs_builder.module(
        "text.yml",
        """
        module: text
        symbols:
          - name: font
            details: |
              ## Parameters

              ## Parameters family
            params:
              - name: family
        """,
    )

    result = _orchestrator(compiler, rasterizer).run(docs_builder.path())

    assert result.tree is not None
    anchors = [block.anchor for block in result.tree["/reference/text/font/"].blocks if isinstance(block, Heading)]
    assert anchors == ["parameters-1", "parameters-family-1", "parameters", "parameters-family"]
