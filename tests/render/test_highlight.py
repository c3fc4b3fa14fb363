"""Tests for code block highlighting."""

from __future__ import annotations

from typdocs.render import StyledSpan, highlight


def test_highlight_preserves_source_text() -> None:
    source = "def area(w, h):\n    return w * h  # rectangle\n"

    spans = highlight(source, "python")

    assert "".join(span.text for span in spans) == source
    assert StyledSpan("def", "hl-keyword") in spans
    assert StyledSpan("area", "hl-function-name") in spans
    assert any(span.style == "hl-comment" for span in spans)


def test_adjacent_spans_with_one_style_are_merged() -> None:
    spans = highlight("x = 1", "python")

    styles = [span.style for span in spans]
    assert all(first != second for first, second in zip(styles, styles[1:]))


def test_typst_aliases_resolve_to_the_typst_lexer() -> None:
    spans = highlight("#set text(red)", "typ")

    assert "".join(span.text for span in spans) == "#set text(red)"
    assert len(spans) > 1


def test_unknown_or_missing_language_is_plain() -> None:
    assert highlight("whatever", "no-such-language") == [StyledSpan("whatever")]
    assert highlight("whatever", None) == [StyledSpan("whatever")]
    assert highlight("", "python") == []


def test_styled_span_to_dict() -> None:
    assert StyledSpan("let", "hl-keyword").to_dict() == {"text": "let", "style": "hl-keyword"}
