"""Tests for typdocs.tree."""

from __future__ import annotations

from pathlib import PurePosixPath

import pytest

from typdocs.content.pages import load_page
from typdocs.models import DiagnosticKind, Heading, Page, SourceLocation
from typdocs.registry import MetadataSource, Registry, load
from typdocs.tree import ROOT_ROUTE, DuplicateRouteError, TreeBuilder

TEXT_MODULE = (
    "module: text\n"
    "groups:\n"
    "  - name: decorations\n"
    "symbols:\n"
    "  - name: font\n"
    "    params:\n"
    "      - name: family\n"
    "        details: Which family.\n"
    "      - name: size\n"
    "  - name: underline\n"
    "    group: decorations\n"
)


def _page(relative: str, text: str) -> Page:
    return load_page(text, PurePosixPath(relative))


def _registry(*sources: MetadataSource) -> Registry:
    return load(sources).registry


@pytest.fixture
def pages() -> list[Page]:
    return [
        _page("index.md", "# Home\n"),
        _page("guides/index.md", "---\ntitle: Guides\norder: 2\n---\n"),
        _page("guides/tables.md", "---\ntitle: Tables\n---\n## Usage\n"),
        _page("guides/arrays.md", "---\ntitle: arrays\n---\n"),
        _page("guides/styling.md", "---\ntitle: Styling\norder: 1\n---\n"),
        _page("tutorial/writing.md", "---\ntitle: Writing\norder: 1\n---\n"),
    ]


def test_traversal_is_linear_and_complete(pages: list[Page]) -> None:
    registry = _registry(MetadataSource("reference/text.yml", TEXT_MODULE))

    tree = TreeBuilder().build(pages, registry).tree

    walked = [node.route for node in tree.walk()]
    assert walked[0] == ROOT_ROUTE
    assert len(walked) == len(set(walked)) == len(tree)
    for node in tree.walk():
        if node.next is not None:
            assert tree[node.next].previous == node.route
        if node.parent is not None:
            assert node.parent in tree
            assert node.route in tree[node.parent].children
    assert tree.root.previous is None


def test_siblings_sort_by_order_then_title(pages: list[Page]) -> None:
    tree = TreeBuilder().build(pages, Registry()).tree

    assert tree["/guides/"].children == ("/guides/styling/", "/guides/arrays/", "/guides/tables/")
    assert tree.root.children == ("/tutorial/writing/", "/guides/")
    assert [node.route for node in tree.walk()][:4] == [
        "/",
        "/tutorial/writing/",
        "/guides/",
        "/guides/styling/",
    ]


def test_pages_without_folder_index_attach_to_nearest_ancestor(pages: list[Page]) -> None:
    tree = TreeBuilder().build(pages, Registry()).tree

    assert tree["/tutorial/writing/"].parent == ROOT_ROUTE
    assert tree["/guides/tables/"].depth == 2


def test_root_is_synthesised_when_missing() -> None:
    tree = TreeBuilder(title="Typst Docs").build([_page("guides/tables.md", "# Tables\n")], Registry()).tree

    assert tree.root.title == "Typst Docs"
    assert tree.root.kind == "root"
    assert tree.root.children == ("/guides/tables/",)


def test_reference_nodes_follow_registry_structure() -> None:
    registry = _registry(MetadataSource("reference/text.yml", TEXT_MODULE))

    tree = TreeBuilder().build([], registry).tree

    reference = tree["/reference/"]
    assert reference.kind == "reference"
    assert reference.children == ("/reference/text/",)
    module = tree["/reference/text/"]
    assert module.symbol_id == "text"
    assert set(module.children) == {"/reference/text/decorations/", "/reference/text/font/"}
    assert tree["/reference/text/underline/"].parent == "/reference/text/decorations/"
    assert "/reference/text/font/family/" not in tree


def test_parameters_are_anchored_sections_of_their_callable() -> None:
    registry = _registry(MetadataSource("reference/text.yml", TEXT_MODULE))

    font = TreeBuilder().build([], registry).tree["/reference/text/font/"]

    headings = [block for block in font.blocks if isinstance(block, Heading)]
    assert [heading.anchor for heading in headings] == [
        "parameters",
        "parameters-family",
        "parameters-size",
    ]
    assert [item.anchor for item in font.outline] == ["parameters"]
    assert [param["name"] for param in font.metadata["params"]] == ["family", "size"]


def test_duplicate_routes_raise() -> None:
    first = _page("guides/tables.md", "# Tables\n")
    second = _page("tables-copy.md", "---\nroute: /guides/tables\n---\n")

    with pytest.raises(DuplicateRouteError) as excinfo:
        TreeBuilder().build([first, second], Registry())
    assert excinfo.value.route == "/guides/tables/"


def test_page_claiming_a_symbol_route_is_a_duplicate() -> None:
    registry = _registry(MetadataSource("reference/text.yml", TEXT_MODULE))
    page = _page("font.md", "---\nroute: /reference/text/font\n---\n")

    with pytest.raises(DuplicateRouteError):
        TreeBuilder().build([page], registry)


def test_unknown_declared_parent_is_reported_and_attached_to_root() -> None:
    page = _page("guides/tables.md", "---\nparent: /nowhere\n---\n# Tables\n")

    build = TreeBuilder().build([page], Registry())

    assert build.tree["/guides/tables/"].parent == ROOT_ROUTE
    (diagnostic,) = build.diagnostics
    assert diagnostic.kind is DiagnosticKind.BROKEN_REFERENCE
    assert diagnostic.location == SourceLocation("guides/tables.md", 1)


def test_parent_cycles_are_broken_at_the_root() -> None:
    first = _page("a.md", "---\nparent: /b\n---\n")
    second = _page("b.md", "---\nparent: /a\n---\n")

    build = TreeBuilder().build([first, second], Registry())

    assert len(list(build.tree.walk())) == 3
    assert build.diagnostics
    assert all(d.kind is DiagnosticKind.BROKEN_REFERENCE for d in build.diagnostics)


def test_builds_are_deterministic(pages: list[Page]) -> None:
    registry = _registry(MetadataSource("reference/text.yml", TEXT_MODULE))

    first = TreeBuilder().build(pages, registry).tree
    second = TreeBuilder().build(list(reversed(pages)), registry).tree

    assert first == second
