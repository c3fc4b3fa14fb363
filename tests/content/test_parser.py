"""Tests for typdocs.content.parser."""

from __future__ import annotations

import textwrap

import pytest

from typdocs.content.parser import (
    MalformedFrontMatter,
    parse,
    parse_body,
    parse_example_options,
    scan_references,
    split_front_matter,
)
from typdocs.models import (
    Callout,
    CodeBlock,
    ExampleBlock,
    Heading,
    ListBlock,
    Paragraph,
    RawHtml,
    ReferenceKind,
    RenderConfig,
    SourceLocation,
    UnknownDirective,
)


def _doc(text: str) -> str:
    return textwrap.dedent(text).lstrip("\n")


def test_parse_splits_front_matter_and_keeps_line_numbers() -> None:
    document = parse(
        _doc(
            """
            ---
            title: Tables
            route: /guides/tables
            ---
            # Tables

            See [foo.bar] and [the grid]($layout.grid).

            - first [`table`]
            - second

            ```example error scale=3
            #panic("boom")
            ```
            """
        ),
        source="guides/tables.md",
    )

    assert document.front_matter == {"title": "Tables", "route": "/guides/tables"}
    heading, paragraph, listing, example = document.blocks

    assert isinstance(heading, Heading)
    assert heading.location == SourceLocation("guides/tables.md", 5)
    assert heading.anchor == "tables"

    assert isinstance(paragraph, Paragraph)
    assert paragraph.location.line == 7
    bare, explicit = paragraph.content.references
    assert (bare.kind, bare.target, bare.raw) == (ReferenceKind.AUTO, "foo.bar", "[foo.bar]")
    assert bare.location == SourceLocation("guides/tables.md", 7)
    assert (explicit.kind, explicit.target, explicit.display) == (
        ReferenceKind.SYMBOL,
        "layout.grid",
        "the grid",
    )
    assert paragraph.content.text[slice(*explicit.span)] == "[the grid]($layout.grid)"

    assert isinstance(listing, ListBlock)
    assert not listing.ordered
    assert len(listing.items) == 2
    (item_ref,) = listing.items[0].references
    assert item_ref.target == "table"
    assert item_ref.location.line == 9

    assert isinstance(example, ExampleBlock)
    assert example.location.line == 12
    assert example.source == '#panic("boom")'
    assert example.config == RenderConfig(expect_error=True, scale=3.0)


def test_reference_lines_follow_soft_breaks() -> None:
    (paragraph,) = parse_body("First line\nthen [math.frac] here", source="p.md", first_line=10)

    assert isinstance(paragraph, Paragraph)
    (reference,) = paragraph.content.references
    assert reference.location == SourceLocation("p.md", 11)


@pytest.mark.parametrize(
    "text",
    [
        "Use `[not.ref]` inline",
        r"Escaped \[not.ref] bracket",
        "An image ![alt](figure.png)",
        "A footnote[^1]",
        "Pending [ ] box",
        "Reference style [label][target]",
        "Definition [label]: /somewhere",
        "External [site](https://typst.app)",
    ],
)
def test_non_reference_brackets_are_ignored(text: str) -> None:
    inline = scan_references(text, SourceLocation("x.md", 1))
    assert inline.references == ()


def test_explicit_page_and_anchor_references() -> None:
    inline = scan_references(
        "Read [the guide](/guides/tables) or [below](#usage).", SourceLocation("x.md", 3)
    )

    page, anchor = inline.references
    assert (page.kind, page.target, page.display) == (ReferenceKind.PAGE, "/guides/tables", "the guide")
    assert (anchor.kind, anchor.target) == (ReferenceKind.ANCHOR, "#usage")


def test_relative_and_titled_links_are_page_references() -> None:
    inline = scan_references(
        'See [the guide](missing-page/) and [tables](/guides/tables "Tables").',
        SourceLocation("x.md", 2),
    )

    relative, titled = inline.references
    assert (relative.kind, relative.target) == (ReferenceKind.PAGE, "missing-page/")
    assert (titled.kind, titled.target, titled.display) == (ReferenceKind.PAGE, "/guides/tables", "tables")
    assert titled.raw == '[tables](/guides/tables "Tables")'


def test_task_checkbox_is_skipped_only_at_list_item_start() -> None:
    (block,) = parse_body("- [x] done with [x] scaled\n- [ ] open", source="todo.md")

    done, pending = block.items
    assert [reference.target for reference in done.references] == ["x"]
    assert done.references[0].span == (14, 17)
    assert pending.references == ()

    prose = scan_references("Multiply by [x] here", SourceLocation("x.md", 1))
    assert [reference.target for reference in prose.references] == ["x"]


def test_unknown_directive_passes_through_as_opaque_text() -> None:
    blocks = parse_body(
        _doc(
            """
            ::: fancy thing
            Some [broken] text
            :::

            After.
            """
        ),
        source="d.md",
    )

    directive, paragraph = blocks
    assert isinstance(directive, UnknownDirective)
    assert directive.name == "fancy"
    assert directive.raw == "::: fancy thing\nSome [broken] text\n:::"
    assert isinstance(paragraph, Paragraph)
    assert paragraph.location.line == 5


def test_callout_directive_scans_its_body() -> None:
    (callout,) = parse_body(
        _doc(
            """
            ::: warning Careful
            Prefer [grid] over tables.

            Second paragraph.
            :::
            """
        ),
        source="c.md",
    )

    assert isinstance(callout, Callout)
    assert callout.style == "warning"
    assert callout.title == "Careful"
    assert len(callout.body) == 2
    (reference,) = callout.body[0].references
    assert reference.target == "grid"
    assert reference.location.line == 2
    assert callout.body[1].references == ()


def test_example_hidden_and_display_only_lines() -> None:
    (example,) = parse_body(
        _doc(
            """
            ```example code
            >>> let x = 1
            x + 1
            <<< // shown only
            ```
            """
        ),
        source="e.md",
    )

    assert isinstance(example, ExampleBlock)
    assert example.source == "let x = 1\nx + 1"
    assert example.display == "x + 1\n// shown only"
    assert example.config.mode == "code"


def test_plain_code_block_and_raw_html() -> None:
    code, html = parse_body(
        _doc(
            """
            ```typ
            #set text(red)
            ```

            <div class="note">
            hi
            </div>
            """
        ),
        source="c.md",
    )

    assert isinstance(code, CodeBlock)
    assert code.language == "typ"
    assert code.text == "#set text(red)"
    assert isinstance(html, RawHtml)
    assert html.location.line == 5


def test_heading_anchors_are_unique_and_explicit_anchors_win() -> None:
    document = parse("## Usage\n\n## Usage\n\n## Options {#opts}\n", source="h.md")

    anchors = [block.anchor for block in document.blocks if isinstance(block, Heading)]
    assert anchors == ["usage", "usage-1", "opts"]
    assert document.anchors == {"usage", "usage-1", "opts"}


def test_byte_order_mark_is_ignored() -> None:
    document = parse("\ufeff# Title\n", source="bom.md")

    (heading,) = document.blocks
    assert isinstance(heading, Heading)
    assert heading.location.line == 1


def test_malformed_front_matter_raises_with_line() -> None:
    with pytest.raises(MalformedFrontMatter) as excinfo:
        parse("---\ntitle: [unclosed\n---\nbody\n", source="bad.md")
    assert excinfo.value.line is not None
    assert excinfo.value.line >= 2


def test_unterminated_front_matter_raises() -> None:
    with pytest.raises(MalformedFrontMatter) as excinfo:
        split_front_matter("---\ntitle: x\n")
    assert excinfo.value.line == 1


def test_non_mapping_front_matter_raises() -> None:
    with pytest.raises(MalformedFrontMatter):
        split_front_matter("---\n- a\n---\n")


def test_document_without_front_matter_starts_at_line_one() -> None:
    front_matter, body, first_line = split_front_matter("# Hi\n")
    assert front_matter == {}
    assert body == "# Hi\n"
    assert first_line == 1


@pytest.mark.parametrize(
    ("options", "expected"),
    [
        ([], RenderConfig()),
        (["code"], RenderConfig(mode="code")),
        (["mode=math", "width=100pt"], RenderConfig(mode="math", width="100pt")),
        (["fails=false"], RenderConfig()),
        (["expect-error", "height=auto"], RenderConfig(expect_error=True, height="auto")),
        (["unknown", "scale=-1", "scale=abc"], RenderConfig()),
    ],
)
def test_parse_example_options(options: list[str], expected: RenderConfig) -> None:
    assert parse_example_options(options) == expected
