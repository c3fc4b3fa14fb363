"""Assembly of guide pages and reference symbols into one navigable tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .content.outline import OutlineBuilder, OutlineItem
from .content.pages import parent_route
from .logging import get_logger
from .models import (
    Block,
    CrossReference,
    Diagnostic,
    DiagnosticKind,
    ExampleBlock,
    Group,
    Heading,
    InlineText,
    Page,
    RenderedArtifact,
    ResolvedLink,
    SourceLocation,
    Symbol,
    SymbolKind,
    block_references,
)
from .registry import Registry

logger = get_logger("tree")

ROOT_ROUTE = "/"


class DuplicateRouteError(RuntimeError):
    """Raised when two nodes claim the same route."""

    def __init__(self, route: str, first: SourceLocation, second: SourceLocation) -> None:
        super().__init__(f"Duplicate route '{route}' (first declared at {first})")
        self.route = route
        self.first = first
        self.location = second


@dataclass(frozen=True)
class PageNode:
    """One navigable node. Relations are stored as routes into the owning tree."""

    route: str
    title: str
    kind: str
    depth: int
    parent: Optional[str]
    children: Tuple[str, ...]
    previous: Optional[str]
    next: Optional[str]
    blocks: Tuple[Block, ...] = ()
    description: Optional[str] = None
    location: Optional[SourceLocation] = None
    symbol_id: Optional[str] = None
    outline: Tuple[OutlineItem, ...] = ()
    links: Mapping[CrossReference, ResolvedLink] = field(default_factory=dict)
    artifacts: Mapping[ExampleBlock, RenderedArtifact] = field(default_factory=dict)
    see_also: Tuple[CrossReference, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)


class PageTree:
    """Arena of :class:`PageNode` objects addressed by route."""

    def __init__(self, nodes: Mapping[str, PageNode], root: str = ROOT_ROUTE) -> None:
        self._nodes = dict(nodes)
        self._root = root

    @property
    def root(self) -> PageNode:
        return self._nodes[self._root]

    @property
    def nodes(self) -> Mapping[str, PageNode]:
        return MappingProxyType(self._nodes)

    def __contains__(self, route: object) -> bool:
        return route in self._nodes

    def __getitem__(self, route: str) -> PageNode:
        return self._nodes[route]

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, route: str) -> Optional[PageNode]:
        return self._nodes.get(route)

    def walk(self) -> Iterator[PageNode]:
        """Yield nodes in navigation (pre-order) order."""
        current: Optional[str] = self._root
        while current is not None:
            node = self._nodes[current]
            yield node
            current = node.next

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PageTree):
            return NotImplemented
        return self._root == other._root and self._nodes == other._nodes


@dataclass
class _Draft:
    route: str
    title: str
    kind: str
    location: SourceLocation
    blocks: List[Block] = field(default_factory=list)
    order: Optional[int] = None
    description: Optional[str] = None
    declared_parent: Optional[str] = None
    parent: Optional[str] = None
    symbol_id: Optional[str] = None
    see_also: Tuple[CrossReference, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    children: List[str] = field(default_factory=list)


@dataclass
class TreeBuild:
    tree: PageTree
    diagnostics: List[Diagnostic] = field(default_factory=list)


class TreeBuilder:
    """Builds a :class:`PageTree` from pages and registry entries.

    Guide pages hang off their declared parent, else the nearest existing
    ancestor route, else the root. Every module, group, function, type and
    constant gets a synthesised node below the reference root; parameters are
    rendered as anchored sections of their callable. Siblings sort by
    explicit order first, then title, then route.
    """

    def __init__(self, *, title: str = "Documentation", outline: OutlineBuilder | None = None) -> None:
        self.title = title
        self.outline = outline or OutlineBuilder()

    def build(
        self,
        pages: Sequence[Page],
        registry: Registry,
        *,
        symbol_blocks: Mapping[str, Sequence[Block]] | None = None,
        links: Mapping[CrossReference, ResolvedLink] | None = None,
        artifacts: Mapping[ExampleBlock, RenderedArtifact] | None = None,
    ) -> TreeBuild:
        symbol_blocks = symbol_blocks or {}
        links = links or {}
        artifacts = artifacts or {}
        diagnostics: List[Diagnostic] = []

        drafts: Dict[str, _Draft] = {}
        for page in sorted(pages, key=lambda item: item.source):
            self._add(drafts, self._page_draft(page))
        if ROOT_ROUTE not in drafts:
            drafts[ROOT_ROUTE] = _Draft(
                route=ROOT_ROUTE,
                title=self.title,
                kind="root",
                location=SourceLocation("<generated>"),
            )

        reference_root = registry.reference_route
        if len(registry) and reference_root not in drafts:
            drafts[reference_root] = _Draft(
                route=reference_root,
                title="Reference",
                kind="reference",
                location=SourceLocation("<generated>"),
            )
        for draft in self._reference_drafts(registry, symbol_blocks):
            self._add(drafts, draft)

        self._attach(drafts, diagnostics)
        self._break_cycles(drafts, diagnostics)
        nodes = self._freeze(drafts, links, artifacts)
        logger.debug("Built page tree with %d nodes", len(nodes))
        return TreeBuild(tree=PageTree(nodes), diagnostics=diagnostics)

    # ------------------------------------------------------------------
    # Drafting

    @staticmethod
    def _add(drafts: Dict[str, _Draft], draft: _Draft) -> None:
        existing = drafts.get(draft.route)
        if existing is not None:
            raise DuplicateRouteError(draft.route, existing.location, draft.location)
        drafts[draft.route] = draft

    @staticmethod
    def _page_draft(page: Page) -> _Draft:
        return _Draft(
            route=page.route,
            title=page.title,
            kind="root" if page.route == ROOT_ROUTE else "page",
            location=page.location or SourceLocation(page.source, 1),
            blocks=list(page.blocks),
            order=page.order,
            description=page.description,
            declared_parent=page.parent,
        )

    def _reference_drafts(
        self, registry: Registry, symbol_blocks: Mapping[str, Sequence[Block]]
    ) -> Iterator[_Draft]:
        for module in registry.modules():
            yield _Draft(
                route=registry.route_of(module.id),
                title=module.display_title,
                kind="module",
                location=module.location,
                blocks=list(symbol_blocks.get(module.id, ())),
                order=module.order,
                description=module.oneliner,
                parent=(
                    registry.route_of(module.module) if module.module else registry.reference_route
                ),
                symbol_id=module.id,
                see_also=tuple(module.see_also),
                metadata=_symbol_metadata(module, registry),
            )
        for group in registry.groups():
            yield _Draft(
                route=registry.route_of(group.id),
                title=group.display_title,
                kind="group",
                location=group.location,
                blocks=list(symbol_blocks.get(group.id, ())),
                order=group.order,
                parent=registry.route_of(group.parent or group.module),
                symbol_id=group.id,
                metadata=_group_metadata(group),
            )
        for symbol in registry.symbols():
            if symbol.kind in (SymbolKind.MODULE, SymbolKind.PARAMETER):
                continue
            owner = symbol.group or symbol.parent or symbol.module or ""
            yield _Draft(
                route=registry.route_of(symbol.id),
                title=symbol.display_title,
                kind=symbol.kind.value,
                location=symbol.location,
                blocks=self._symbol_blocks(symbol, registry, symbol_blocks),
                order=symbol.order,
                description=symbol.oneliner,
                parent=registry.route_of(owner),
                symbol_id=symbol.id,
                see_also=tuple(symbol.see_also),
                metadata=_symbol_metadata(symbol, registry),
            )

    @staticmethod
    def _symbol_blocks(
        symbol: Symbol, registry: Registry, symbol_blocks: Mapping[str, Sequence[Block]]
    ) -> List[Block]:
        blocks = list(symbol_blocks.get(symbol.id, ()))
        if not symbol.params:
            return blocks
        blocks.append(
            Heading(2, InlineText("Parameters"), "parameters", symbol.location)
        )
        for param_id in symbol.params:
            param = registry.get(param_id)
            if param is None:
                continue
            blocks.append(
                Heading(3, InlineText(param.name), registry.anchor_of(param.id) or param.name, param.location)
            )
            blocks.extend(symbol_blocks.get(param.id, ()))
        return blocks

    # ------------------------------------------------------------------
    # Linking

    def _attach(self, drafts: Dict[str, _Draft], diagnostics: List[Diagnostic]) -> None:
        for route in sorted(drafts):
            draft = drafts[route]
            if route == ROOT_ROUTE:
                draft.parent = None
                continue
            if draft.parent is not None and draft.parent in drafts:
                continue
            declared = draft.declared_parent
            if declared is not None:
                if declared in drafts and declared != route:
                    draft.parent = declared
                    continue
                message = f"Unknown parent page '{declared}' for {route}"
                logger.warning("%s: %s", draft.location, message)
                diagnostics.append(
                    Diagnostic(DiagnosticKind.BROKEN_REFERENCE, draft.location, message)
                )
                draft.parent = ROOT_ROUTE
                continue
            draft.parent = _nearest_ancestor(route, drafts)

        for route in sorted(drafts):
            draft = drafts[route]
            if draft.parent is not None:
                drafts[draft.parent].children.append(route)

    def _break_cycles(self, drafts: Dict[str, _Draft], diagnostics: List[Diagnostic]) -> None:
        for route in sorted(drafts):
            seen = {route}
            current = drafts[route].parent
            while current is not None and current != ROOT_ROUTE:
                if current == route:
                    draft = drafts[route]
                    message = f"Parent chain of {route} loops back to itself"
                    logger.warning("%s: %s", draft.location, message)
                    diagnostics.append(
                        Diagnostic(DiagnosticKind.BROKEN_REFERENCE, draft.location, message)
                    )
                    drafts[drafts[route].parent or ROOT_ROUTE].children.remove(route)
                    draft.parent = ROOT_ROUTE
                    drafts[ROOT_ROUTE].children.append(route)
                    break
                if current in seen:
                    break
                seen.add(current)
                current = drafts[current].parent

    def _freeze(
        self,
        drafts: Dict[str, _Draft],
        links: Mapping[CrossReference, ResolvedLink],
        artifacts: Mapping[ExampleBlock, RenderedArtifact],
    ) -> Dict[str, PageNode]:
        for draft in drafts.values():
            draft.children.sort(key=lambda route: _sort_key(drafts[route]))

        order: List[Tuple[str, int]] = []
        stack: List[Tuple[str, int]] = [(ROOT_ROUTE, 0)]
        while stack:
            route, depth = stack.pop()
            order.append((route, depth))
            for child in reversed(drafts[route].children):
                stack.append((child, depth + 1))

        nodes: Dict[str, PageNode] = {}
        for index, (route, depth) in enumerate(order):
            draft = drafts[route]
            references = list(block_references(draft.blocks)) + list(draft.see_also)
            nodes[route] = PageNode(
                route=route,
                title=draft.title,
                kind=draft.kind,
                depth=depth,
                parent=draft.parent,
                children=tuple(draft.children),
                previous=order[index - 1][0] if index > 0 else None,
                next=order[index + 1][0] if index + 1 < len(order) else None,
                blocks=tuple(draft.blocks),
                description=draft.description,
                location=draft.location,
                symbol_id=draft.symbol_id,
                outline=tuple(self.outline.build(draft.blocks)),
                links=MappingProxyType(
                    {reference: links[reference] for reference in references if reference in links}
                ),
                artifacts=MappingProxyType(
                    {
                        block: artifacts[block]
                        for block in draft.blocks
                        if isinstance(block, ExampleBlock) and block in artifacts
                    }
                ),
                see_also=draft.see_also,
                metadata=MappingProxyType(dict(draft.metadata)),
            )
        return nodes


def _nearest_ancestor(route: str, drafts: Mapping[str, _Draft]) -> str:
    current = parent_route(route)
    while current is not None:
        if current in drafts:
            return current
        current = parent_route(current)
    return ROOT_ROUTE


def _sort_key(draft: _Draft) -> Tuple[bool, int, str, str]:
    return (draft.order is None, draft.order or 0, draft.title.casefold(), draft.route)


def _symbol_metadata(symbol: Symbol, registry: Registry) -> Dict[str, Any]:
    params = []
    for param_id in symbol.params:
        param = registry.get(param_id)
        if param is None:
            continue
        params.append(
            {
                "name": param.name,
                "anchor": registry.anchor_of(param.id),
                "types": list(param.types),
                "default": param.default,
                "positional": param.positional,
                "named": param.named,
                "required": param.required,
                "variadic": param.variadic,
                "settable": param.settable,
            }
        )
    return {
        "id": symbol.id,
        "kind": symbol.kind.value,
        "stability": symbol.stability.value,
        "deprecation": symbol.deprecation,
        "types": list(symbol.types),
        "returns": list(symbol.returns),
        "keywords": list(symbol.keywords),
        "params": params,
    }


def _group_metadata(group: Group) -> Dict[str, Any]:
    return {"id": group.id, "kind": "group", "members": list(group.members)}


__all__ = ["DuplicateRouteError", "PageNode", "PageTree", "ROOT_ROUTE", "TreeBuild", "TreeBuilder"]
