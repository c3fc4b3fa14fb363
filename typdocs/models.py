"""Core data models shared across typdocs components."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union


@dataclass(frozen=True)
class SourceLocation:
    """Points at a file (or metadata entry) and an optional 1-based line."""

    source: str
    line: Optional[int] = None

    def __str__(self) -> str:
        if self.line is None:
            return self.source
        return f"{self.source}:{self.line}"

    def offset(self, lines: int) -> "SourceLocation":
        if self.line is None:
            return self
        return SourceLocation(self.source, self.line + lines)


class DiagnosticKind(str, Enum):
    BROKEN_REFERENCE = "broken-reference"
    COMPILE_FAILURE = "compile-failure"
    RENDER_FAILURE = "render-failure"
    DUPLICATE_ROUTE = "duplicate-route"
    DUPLICATE_ID = "duplicate-id"
    MALFORMED_FRONT_MATTER = "malformed-front-matter"
    SCHEMA_ERROR = "schema-error"


STRUCTURAL_KINDS = frozenset({DiagnosticKind.DUPLICATE_ROUTE, DiagnosticKind.DUPLICATE_ID})
DEFAULT_FAIL_ON: Tuple[DiagnosticKind, ...] = (
    DiagnosticKind.BROKEN_REFERENCE,
    DiagnosticKind.COMPILE_FAILURE,
)


@dataclass(frozen=True)
class Diagnostic:
    """A single problem found while building the documentation."""

    kind: DiagnosticKind
    location: SourceLocation
    message: str

    @property
    def is_structural(self) -> bool:
        return self.kind in STRUCTURAL_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "location": str(self.location),
            "source": self.location.source,
            "line": self.location.line,
            "message": self.message,
        }


class DiagnosticReport:
    """Accumulates diagnostics from every pipeline phase."""

    def __init__(self, diagnostics: Iterable[Diagnostic] = ()) -> None:
        self._items: List[Diagnostic] = list(diagnostics)
        self.aborted = False

    def add(self, diagnostic: Diagnostic) -> None:
        self._items.append(diagnostic)

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        self._items.extend(diagnostics)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [item for item in self._items if item.kind is kind]

    def as_set(self) -> frozenset[Diagnostic]:
        return frozenset(self._items)

    def sorted(self) -> List[Diagnostic]:
        """Return diagnostics ordered by location so reports are stable."""
        return sorted(
            self._items,
            key=lambda item: (
                item.location.source,
                item.location.line or 0,
                item.kind.value,
                item.message,
            ),
        )

    def counts(self) -> Dict[str, int]:
        counter = Counter(item.kind.value for item in self._items)
        return dict(sorted(counter.items()))

    def failed(self, fail_on: Sequence[DiagnosticKind] = DEFAULT_FAIL_ON) -> bool:
        """Return True when the run must report a non-zero outcome."""
        if self.aborted:
            return True
        failing = set(fail_on) | set(STRUCTURAL_KINDS)
        return any(item.kind in failing for item in self._items)


class SymbolKind(str, Enum):
    MODULE = "module"
    FUNCTION = "function"
    TYPE = "type"
    CONSTANT = "constant"
    PARAMETER = "parameter"

    @property
    def is_callable(self) -> bool:
        return self in (SymbolKind.FUNCTION, SymbolKind.TYPE)


class Stability(str, Enum):
    STABLE = "stable"
    EXPERIMENTAL = "experimental"
    DEPRECATED = "deprecated"


class ReferenceKind(str, Enum):
    AUTO = "auto"
    SYMBOL = "symbol"
    PAGE = "page"
    ANCHOR = "anchor"


@dataclass(frozen=True)
class CrossReference:
    """An unresolved reference token discovered while parsing.

    ``target`` is the name or route being referenced, ``raw`` the token as
    written, and ``span`` the offsets of ``raw`` inside the carrying text.
    """

    raw: str
    target: str
    kind: ReferenceKind
    location: SourceLocation
    display: Optional[str] = None
    span: Tuple[int, int] = (0, 0)

    @property
    def text(self) -> str:
        """Plain text shown when the reference cannot be linked."""
        return self.display or self.target


@dataclass(frozen=True)
class ResolvedLink:
    """A validated pointer to a symbol or page."""

    raw: str
    target_id: str
    route: str
    display: str
    kind: ReferenceKind
    anchor: Optional[str] = None

    @property
    def href(self) -> str:
        if self.anchor:
            return f"{self.route}#{self.anchor}"
        return self.route

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target_id,
            "kind": self.kind.value,
            "href": self.href,
            "text": self.display,
        }


@dataclass
class Symbol:
    """A documented language entity loaded from reference metadata."""

    id: str
    name: str
    kind: SymbolKind
    location: SourceLocation
    module: Optional[str] = None
    parent: Optional[str] = None
    title: Optional[str] = None
    oneliner: Optional[str] = None
    docs: str = ""
    params: List[str] = field(default_factory=list)
    returns: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    default: Optional[str] = None
    positional: bool = False
    named: bool = True
    required: bool = False
    variadic: bool = False
    settable: bool = False
    stability: Stability = Stability.STABLE
    deprecation: Optional[str] = None
    group: Optional[str] = None
    order: Optional[int] = None
    keywords: List[str] = field(default_factory=list)
    see_also: List[CrossReference] = field(default_factory=list)
    members: List[str] = field(default_factory=list)
    docs_location: Optional[SourceLocation] = None

    @property
    def display_title(self) -> str:
        return self.title or self.name


@dataclass
class Group:
    """Navigation grouping of symbols inside one module."""

    id: str
    name: str
    module: str
    location: SourceLocation
    title: Optional[str] = None
    parent: Optional[str] = None
    order: Optional[int] = None
    details: str = ""
    members: List[str] = field(default_factory=list)
    children: List[str] = field(default_factory=list)
    docs_location: Optional[SourceLocation] = None

    @property
    def display_title(self) -> str:
        return self.title or self.name.replace("-", " ").replace("_", " ").title()


@dataclass(frozen=True)
class InlineText:
    """Prose text together with the reference tokens found inside it."""

    text: str
    references: Tuple[CrossReference, ...] = ()


@dataclass(frozen=True)
class Heading:
    level: int
    content: InlineText
    anchor: str
    location: SourceLocation


@dataclass(frozen=True)
class Paragraph:
    content: InlineText
    location: SourceLocation


@dataclass(frozen=True)
class ListBlock:
    ordered: bool
    items: Tuple[InlineText, ...]
    location: SourceLocation


@dataclass(frozen=True)
class CodeBlock:
    language: Optional[str]
    text: str
    location: SourceLocation


@dataclass(frozen=True)
class RawHtml:
    html: str
    location: SourceLocation


@dataclass(frozen=True)
class Callout:
    style: str
    title: Optional[str]
    body: Tuple[InlineText, ...]
    location: SourceLocation


@dataclass(frozen=True)
class UnknownDirective:
    """A directive the parser does not know, kept as opaque text."""

    name: str
    raw: str
    location: SourceLocation


@dataclass(frozen=True)
class RenderConfig:
    """How an example is compiled and rasterized."""

    mode: str = "markup"
    expect_error: bool = False
    scale: Optional[float] = None
    width: Optional[str] = None
    height: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "expect_error": self.expect_error,
            "scale": self.scale,
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class ExampleBlock:
    """Executable snippet. ``source`` is compiled, ``display`` is shown."""

    source: str
    display: str
    config: RenderConfig
    location: SourceLocation


Block = Union[
    Heading,
    Paragraph,
    ListBlock,
    CodeBlock,
    RawHtml,
    Callout,
    UnknownDirective,
    ExampleBlock,
]


def block_inlines(block: Block) -> Tuple[InlineText, ...]:
    """Return the prose carriers of a block (empty for code and opaque blocks)."""
    if isinstance(block, (Heading, Paragraph)):
        return (block.content,)
    if isinstance(block, ListBlock):
        return block.items
    if isinstance(block, Callout):
        return block.body
    return ()


def block_references(blocks: Iterable[Block]) -> Iterator[CrossReference]:
    for block in blocks:
        for inline in block_inlines(block):
            yield from inline.references


@dataclass(frozen=True)
class RasterImage:
    data: bytes
    width: int
    height: int
    format: str = "png"


class ArtifactStatus(str, Enum):
    OK = "ok"
    EXPECTED_ERROR = "expected-error"
    COMPILE_ERROR = "compile-error"
    RENDER_ERROR = "render-error"
    UNEXPECTED_SUCCESS = "unexpected-success"
    TIMEOUT = "timeout"

    @property
    def succeeded(self) -> bool:
        return self in (ArtifactStatus.OK, ArtifactStatus.EXPECTED_ERROR)


@dataclass(frozen=True)
class RenderedArtifact:
    """Outcome of rendering one example, addressed by its content hash."""

    key: str
    status: ArtifactStatus
    images: Tuple[RasterImage, ...] = ()
    error: Optional[str] = None
    diagnostics: Tuple[str, ...] = ()
    transient: bool = False

    @property
    def cacheable(self) -> bool:
        return not self.transient and self.status is not ArtifactStatus.TIMEOUT


@dataclass
class Page:
    """A guide page parsed from a Markdown source."""

    route: str
    title: str
    source: str
    blocks: List[Block] = field(default_factory=list)
    front_matter: Dict[str, Any] = field(default_factory=dict)
    parent: Optional[str] = None
    order: Optional[int] = None
    description: Optional[str] = None
    scope: Optional[str] = None
    anchors: Set[str] = field(default_factory=set)
    location: Optional[SourceLocation] = None

    def __post_init__(self) -> None:
        if self.location is None:
            self.location = SourceLocation(self.source, 1)
