"""Cross-reference resolution against the symbol registry and page index."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from .content.pages import normalize_route
from .logging import get_logger
from .models import (
    CrossReference,
    Diagnostic,
    DiagnosticKind,
    ReferenceKind,
    ResolvedLink,
)
from .registry import Registry, iter_scope

logger = get_logger("resolver")


@dataclass(frozen=True)
class ResolutionContext:
    """Where a reference was written: the page route, module scope and its anchors."""

    route: str
    scope: Optional[str] = None
    anchors: FrozenSet[str] = frozenset()


class PageIndex:
    """Every route that will exist in the tree, with its title and anchors."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[str, FrozenSet[str]]] = {}

    def add(self, route: str, title: str, anchors: Iterable[str] = ()) -> None:
        self._entries[route] = (title, frozenset(anchors))

    def __contains__(self, route: object) -> bool:
        return route in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def title(self, route: str) -> Optional[str]:
        entry = self._entries.get(route)
        return entry[0] if entry else None

    def anchors(self, route: str) -> FrozenSet[str]:
        entry = self._entries.get(route)
        return entry[1] if entry else frozenset()


Resolution = Union[ResolvedLink, Diagnostic]


class Resolver:
    """Resolves reference tokens once the registry and all pages are loaded.

    Lookup order: the current module scope (walking outwards), then the
    global namespace by exact id and unique short name, then page routes,
    then anchors. A short name matching several symbols is reported as a
    broken reference instead of picking one.
    """

    def __init__(self, registry: Registry, pages: PageIndex) -> None:
        self.registry = registry
        self.pages = pages

    def resolve(self, reference: CrossReference, context: ResolutionContext) -> Resolution:
        target, _, anchor = reference.target.partition("#")
        target = target.strip()
        anchor = anchor.strip() or None

        if not target:
            if anchor and (anchor in context.anchors or anchor in self.pages.anchors(context.route)):
                return self._link(reference, context.route, context.route, ReferenceKind.ANCHOR, anchor)
            return self._broken(reference, f"Unknown anchor '#{anchor or ''}' on this page")

        candidates: List[str] = []
        if reference.kind in (ReferenceKind.AUTO, ReferenceKind.SYMBOL) and not target.startswith("/"):
            symbol_id, candidates = self._find_symbol(target, context.scope)
            if symbol_id is not None:
                return self._symbol_link(reference, symbol_id, anchor)
            if len(candidates) > 1:
                return self._broken(
                    reference,
                    f"Ambiguous reference '{target}' matches {', '.join(candidates)}",
                )

        if reference.kind in (ReferenceKind.AUTO, ReferenceKind.PAGE):
            route = _page_route(target, reference.kind, context.route)
            if route in self.pages:
                if anchor and anchor not in self.pages.anchors(route):
                    return self._broken(reference, f"Unknown anchor '#{anchor}' on page {route}")
                return self._link(reference, route, route, ReferenceKind.PAGE, anchor)

        if reference.kind is ReferenceKind.SYMBOL:
            return self._broken(reference, f"Unknown symbol '{target}'")
        if reference.kind is ReferenceKind.PAGE:
            return self._broken(reference, f"Unknown page '{target}'")
        return self._broken(reference, f"Unknown reference '{target}'")

    def resolve_all(
        self, references: Iterable[CrossReference], context: ResolutionContext
    ) -> Tuple[Dict[CrossReference, ResolvedLink], List[Diagnostic]]:
        links: Dict[CrossReference, ResolvedLink] = {}
        diagnostics: List[Diagnostic] = []
        for reference in references:
            outcome = self.resolve(reference, context)
            if isinstance(outcome, Diagnostic):
                diagnostics.append(outcome)
            else:
                links[reference] = outcome
        return links, diagnostics

    def _find_symbol(self, name: str, scope: Optional[str]) -> Tuple[Optional[str], List[str]]:
        for prefix in iter_scope(scope):
            candidate = f"{prefix}.{name}"
            if candidate in self.registry:
                return candidate, []
        if name in self.registry:
            return name, []
        matches = self.registry.find_suffix(name)
        if len(matches) == 1:
            return matches[0], []
        return None, matches

    def _symbol_link(
        self, reference: CrossReference, symbol_id: str, anchor: Optional[str]
    ) -> Resolution:
        route = self.registry.route_of(symbol_id)
        if anchor is not None:
            if anchor not in self.pages.anchors(route):
                return self._broken(reference, f"Unknown anchor '#{anchor}' on {symbol_id}")
        else:
            anchor = self.registry.anchor_of(symbol_id)
        return self._link(reference, symbol_id, route, ReferenceKind.SYMBOL, anchor)

    @staticmethod
    def _link(
        reference: CrossReference,
        target_id: str,
        route: str,
        kind: ReferenceKind,
        anchor: Optional[str],
    ) -> ResolvedLink:
        return ResolvedLink(
            raw=reference.raw,
            target_id=target_id,
            route=route,
            display=reference.text,
            kind=kind,
            anchor=anchor,
        )

    @staticmethod
    def _broken(reference: CrossReference, message: str) -> Diagnostic:
        logger.debug("Broken reference %s at %s: %s", reference.raw, reference.location, message)
        return Diagnostic(DiagnosticKind.BROKEN_REFERENCE, reference.location, message)


def _page_route(target: str, kind: ReferenceKind, current: str) -> str:
    if kind is ReferenceKind.PAGE and not target.startswith("/"):
        return normalize_route(posixpath.normpath(posixpath.join(current, target)))
    return normalize_route(target)


__all__ = ["PageIndex", "Resolution", "ResolutionContext", "Resolver"]
