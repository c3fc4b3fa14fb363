"""Syntax highlighting for non-executable code blocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pygments import token as T
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

_ALIASES = {
    "typ": "typst",
    "typc": "typst",
    "typm": "typst",
    "sh": "bash",
    "shell": "bash",
}

# Unified hl-* class names shared with the site stylesheet.
_HL_MAP = {
    T.Comment: "hl-comment",
    T.Keyword.Type: "hl-keyword-type",
    T.Keyword.Declaration: "hl-keyword-declaration",
    T.Keyword.Namespace: "hl-keyword-namespace",
    T.Keyword.Constant: "hl-constant-name",
    T.Keyword: "hl-keyword",
    T.Literal.String: "hl-string",
    T.Literal.Number: "hl-number",
    T.Name.Function: "hl-function-name",
    T.Name.Class: "hl-class-name",
    T.Name.Builtin: "hl-builtin-name",
    T.Name.Namespace: "hl-namespace-name",
    T.Name.Attribute: "hl-property-name",
    T.Name.Property: "hl-property-name",
    T.Name.Constant: "hl-constant-name",
    T.Name.Variable: "hl-variable-name",
    T.Name.Tag: "hl-tag-name",
    T.Generic.Heading: "hl-heading",
    T.Generic.Subheading: "hl-heading",
    T.Generic.Emph: "hl-emph",
    T.Generic.Strong: "hl-strong",
    T.Operator: "hl-operator",
    T.Punctuation: "hl-punctuation",
    T.Escape: "hl-escape",
    T.Name: "",
    T.Text: "",
    T.Other: "",
}


@dataclass(frozen=True)
class StyledSpan:
    text: str
    style: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "style": self.style}


def highlight(source: str, language: Optional[str]) -> List[StyledSpan]:
    """Split ``source`` into styled spans; unknown languages yield one plain span."""
    if not source:
        return []
    name = (language or "").strip().lower()
    if not name:
        return [StyledSpan(source)]
    try:
        lexer = get_lexer_by_name(_ALIASES.get(name, name), stripnl=False, ensurenl=False)
    except ClassNotFound:
        return [StyledSpan(source)]

    spans: List[StyledSpan] = []
    for ttype, value in lexer.get_tokens(source):
        if not value:
            continue
        style = _hl_class(ttype) or None
        if spans and spans[-1].style == style:
            spans[-1] = StyledSpan(spans[-1].text + value, style)
        else:
            spans.append(StyledSpan(value, style))
    return spans


def _hl_class(ttype: Any) -> str:
    while ttype:
        if ttype in _HL_MAP:
            return _HL_MAP[ttype]
        ttype = ttype.parent
    return ""


__all__ = ["StyledSpan", "highlight"]
