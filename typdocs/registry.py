"""Symbol registry built from YAML reference metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

from .logging import get_logger
from .models import (
    CrossReference,
    Diagnostic,
    DiagnosticKind,
    Group,
    ReferenceKind,
    SourceLocation,
    Stability,
    Symbol,
    SymbolKind,
)

_LINE_KEY = "__line__"
_FIELD_LINES_KEY = "__field_lines__"
_NAME_PATTERN = re.compile(r"^[A-Za-z_][\w-]*$")
_MEMBER_KINDS = {SymbolKind.FUNCTION, SymbolKind.TYPE, SymbolKind.CONSTANT}

logger = get_logger("registry")


class RegistryError(RuntimeError):
    """Base class for reference metadata failures."""


class SchemaError(RegistryError):
    """Raised when one metadata source does not match the expected shape."""

    def __init__(self, message: str, location: SourceLocation) -> None:
        super().__init__(message)
        self.location = location


class DuplicateIdError(RegistryError):
    """Raised when two entries claim the same identifier."""

    def __init__(self, symbol_id: str, first: SourceLocation, second: SourceLocation) -> None:
        super().__init__(f"Duplicate id '{symbol_id}' (first declared at {first})")
        self.symbol_id = symbol_id
        self.first = first
        self.location = second


@dataclass(frozen=True)
class MetadataSource:
    """One YAML document describing a module."""

    name: str
    text: str


@dataclass
class LoadResult:
    registry: "Registry"
    diagnostics: List[Diagnostic] = field(default_factory=list)


class Registry:
    """Typed, read-only view of every documented symbol and group."""

    def __init__(self, reference_route: str = "/reference/") -> None:
        self.reference_route = reference_route
        self._symbols: Dict[str, Symbol] = {}
        self._groups: Dict[str, Group] = {}

    def __contains__(self, item: object) -> bool:
        return item in self._symbols or item in self._groups

    def __len__(self) -> int:
        return len(self._symbols)

    def get(self, symbol_id: str) -> Optional[Symbol]:
        return self._symbols.get(symbol_id)

    def group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def symbols(self) -> List[Symbol]:
        return [self._symbols[key] for key in sorted(self._symbols)]

    def groups(self) -> List[Group]:
        return [self._groups[key] for key in sorted(self._groups)]

    def ids(self) -> List[str]:
        return sorted(set(self._symbols) | set(self._groups))

    def modules(self) -> List[Symbol]:
        return [symbol for symbol in self.symbols() if symbol.kind is SymbolKind.MODULE]

    def module_members(self, module_id: str) -> List[Symbol]:
        """Top-level (non-scoped) symbols declared directly in a module."""
        return [
            symbol
            for symbol in self.symbols()
            if symbol.module == module_id
            and symbol.parent is None
            and symbol.kind is not SymbolKind.MODULE
        ]

    def submodules(self, module_id: Optional[str]) -> List[Symbol]:
        return [symbol for symbol in self.modules() if symbol.module == module_id]

    def groups_of(self, module_id: str) -> List[Group]:
        return [group for group in self.groups() if group.module == module_id and group.parent is None]

    def find_suffix(self, name: str) -> List[str]:
        """Return ids whose trailing dotted segments equal ``name``."""
        suffix = f".{name}"
        return sorted(
            key
            for key in set(self._symbols) | set(self._groups)
            if key == name or key.endswith(suffix)
        )

    def route_of(self, item_id: str) -> str:
        group = self._groups.get(item_id)
        if group is not None:
            return f"{self.route_of(group.module)}{group.name}/"
        symbol = self._symbols[item_id]
        if symbol.kind is SymbolKind.MODULE:
            return self.reference_route + "/".join(symbol.id.split(".")) + "/"
        if symbol.kind is SymbolKind.PARAMETER:
            return self.route_of(symbol.parent or symbol.module or "")
        owner = symbol.parent or symbol.module
        return f"{self.route_of(owner or '')}{symbol.name}/"

    def anchor_of(self, item_id: str) -> Optional[str]:
        symbol = self._symbols.get(item_id)
        if symbol is not None and symbol.kind is SymbolKind.PARAMETER:
            return f"parameters-{symbol.name}"
        return None

    def title_of(self, item_id: str) -> str:
        group = self._groups.get(item_id)
        if group is not None:
            return group.display_title
        return self._symbols[item_id].display_title

    def _add_symbol(self, symbol: Symbol, seen: Dict[str, SourceLocation]) -> None:
        _claim(symbol.id, symbol.location, seen)
        self._symbols[symbol.id] = symbol

    def _add_group(self, group: Group, seen: Dict[str, SourceLocation]) -> None:
        _claim(group.id, group.location, seen)
        self._groups[group.id] = group


def _claim(item_id: str, location: SourceLocation, seen: Dict[str, SourceLocation]) -> None:
    if item_id in seen:
        raise DuplicateIdError(item_id, seen[item_id], location)
    seen[item_id] = location


class _LineLoader(yaml.SafeLoader):
    """SafeLoader that remembers where each mapping and field value starts."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> Dict[Any, Any]:
        mapping = super().construct_mapping(node, deep=deep)
        field_lines: Dict[str, int] = {}
        for key_node, value_node in node.value:
            if isinstance(key_node, yaml.ScalarNode):
                line = value_node.start_mark.line + 1
                if isinstance(value_node, yaml.ScalarNode) and value_node.style in {"|", ">"}:
                    line += 1
                field_lines[str(key_node.value)] = line
        mapping[_LINE_KEY] = node.start_mark.line + 1
        mapping[_FIELD_LINES_KEY] = field_lines
        return mapping


@dataclass
class _ModuleEntries:
    module: Symbol
    symbols: List[Symbol]
    groups: List[Group]

    @property
    def parent_module(self) -> Optional[str]:
        return self.module.module


def load(
    sources: Iterable[MetadataSource], *, reference_route: str = "/reference/"
) -> LoadResult:
    """Parse metadata sources into a :class:`Registry`.

    Invalid sources are recorded as diagnostics and skipped. Duplicate ids
    raise :class:`DuplicateIdError`.
    """
    diagnostics: List[Diagnostic] = []
    entries: List[Tuple[MetadataSource, _ModuleEntries]] = []
    for source in sorted(sources, key=lambda item: item.name):
        try:
            entries.append((source, _load_source(source)))
        except SchemaError as exc:
            logger.warning("Skipping %s: %s", exc.location, exc)
            kind = DiagnosticKind.SCHEMA_ERROR
            if isinstance(exc.__cause__, yaml.YAMLError):
                kind = DiagnosticKind.MALFORMED_FRONT_MATTER
            diagnostics.append(Diagnostic(kind, exc.location, str(exc)))

    entries = _drop_orphans(entries, diagnostics)

    registry = Registry(reference_route=reference_route)
    seen: Dict[str, SourceLocation] = {}
    for _, module_entries in entries:
        registry._add_symbol(module_entries.module, seen)
        for group in module_entries.groups:
            registry._add_group(group, seen)
        for symbol in module_entries.symbols:
            registry._add_symbol(symbol, seen)
    logger.debug("Registry loaded %d symbols and %d groups", len(registry), len(registry.groups()))
    return LoadResult(registry=registry, diagnostics=diagnostics)


def _drop_orphans(
    entries: List[Tuple[MetadataSource, _ModuleEntries]], diagnostics: List[Diagnostic]
) -> List[Tuple[MetadataSource, _ModuleEntries]]:
    remaining = list(entries)
    while True:
        modules = {module_entries.module.id for _, module_entries in remaining}
        orphans = [
            item
            for item in remaining
            if item[1].parent_module is not None and item[1].parent_module not in modules
        ]
        if not orphans:
            return remaining
        for source, module_entries in orphans:
            message = (
                f"Module '{module_entries.module.id}' requires parent module "
                f"'{module_entries.parent_module}', which is not declared"
            )
            logger.warning("Skipping %s: %s", source.name, message)
            diagnostics.append(
                Diagnostic(DiagnosticKind.SCHEMA_ERROR, module_entries.module.location, message)
            )
        dropped = {id(item) for item in orphans}
        remaining = [item for item in remaining if id(item) not in dropped]


def _load_source(source: MetadataSource) -> _ModuleEntries:
    try:
        data = yaml.load(source.text, Loader=_LineLoader)  # noqa: S506 - SafeLoader subclass
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 1 if mark is not None else None
        raise SchemaError(
            f"Invalid YAML: {str(exc).splitlines()[0]}", SourceLocation(source.name, line)
        ) from exc
    if not isinstance(data, dict):
        raise SchemaError("Metadata must be a mapping", SourceLocation(source.name, 1))
    return _SourceBuilder(source.name).build(data)


class _SourceBuilder:
    """Validates one module document and produces typed entries."""

    def __init__(self, source: str) -> None:
        self.source = source

    def build(self, data: Mapping[str, Any]) -> _ModuleEntries:
        location = self._location(data)
        module_id = self._require_path(data, "module")
        parent_module, _, name = module_id.rpartition(".")
        module = Symbol(
            id=module_id,
            name=name,
            kind=SymbolKind.MODULE,
            location=location,
            module=parent_module or None,
            title=self._str(data, "title"),
            oneliner=self._str(data, "oneliner"),
            docs=self._str(data, "details") or "",
            docs_location=self._field_location(data, "details"),
            order=self._int(data, "order"),
            keywords=self._str_list(data, "keywords"),
            see_also=self._references(data, "see_also"),
            stability=self._stability(data),
            deprecation=self._str(data, "deprecation"),
        )

        groups: List[Group] = []
        group_ids: Dict[str, str] = {}
        for raw_group in self._mapping_list(data, "groups"):
            self._build_group(raw_group, module_id, None, groups, group_ids)

        symbols: List[Symbol] = []
        for raw_symbol in self._mapping_list(data, "symbols"):
            symbol = self._build_symbol(raw_symbol, module_id, module_id, None, symbols)
            if symbol.group is not None:
                group_id = group_ids.get(symbol.group)
                if group_id is None:
                    raise SchemaError(
                        f"Symbol '{symbol.id}' names unknown group '{symbol.group}'",
                        symbol.location,
                    )
                symbol.group = group_id
                next(group for group in groups if group.id == group_id).members.append(symbol.id)
        return _ModuleEntries(module=module, symbols=symbols, groups=groups)

    def _build_group(
        self,
        data: Mapping[str, Any],
        module_id: str,
        parent: Optional[Group],
        groups: List[Group],
        group_ids: Dict[str, str],
    ) -> None:
        name = self._require_name(data)
        if name in group_ids:
            raise SchemaError(f"Group '{name}' is declared twice", self._location(data))
        group = Group(
            id=f"{module_id}.{name}",
            name=name,
            module=module_id,
            location=self._location(data),
            title=self._str(data, "title"),
            parent=parent.id if parent else None,
            order=self._int(data, "order"),
            details=self._str(data, "details") or "",
            docs_location=self._field_location(data, "details"),
        )
        group_ids[name] = group.id
        groups.append(group)
        if parent is not None:
            parent.children.append(group.id)
        for child in self._mapping_list(data, "groups"):
            self._build_group(child, module_id, group, groups, group_ids)

    def _build_symbol(
        self,
        data: Mapping[str, Any],
        module_id: str,
        prefix: str,
        parent: Optional[str],
        out: List[Symbol],
    ) -> Symbol:
        location = self._location(data)
        name = self._require_name(data)
        kind = self._kind(data)
        symbol_id = f"{prefix}.{name}"
        deprecation = self._str(data, "deprecation")
        stability = self._stability(data)
        if deprecation and "stability" not in data:
            stability = Stability.DEPRECATED
        symbol = Symbol(
            id=symbol_id,
            name=name,
            kind=kind,
            location=location,
            module=module_id,
            parent=parent,
            title=self._str(data, "title"),
            oneliner=self._str(data, "oneliner"),
            docs=self._str(data, "details") or "",
            docs_location=self._field_location(data, "details"),
            returns=self._str_list(data, "returns"),
            types=self._str_list(data, "types"),
            default=self._scalar_text(data, "default"),
            stability=stability,
            deprecation=deprecation,
            group=self._str(data, "group") if parent is None else None,
            order=self._int(data, "order"),
            keywords=self._str_list(data, "keywords"),
            see_also=self._references(data, "see_also"),
        )
        out.append(symbol)

        raw_params = self._mapping_list(data, "params")
        if raw_params and not kind.is_callable:
            raise SchemaError(f"Only functions and types take parameters ('{symbol_id}')", location)
        for raw_param in raw_params:
            param = self._build_param(raw_param, symbol)
            symbol.params.append(param.id)
            out.append(param)

        for raw_member in self._mapping_list(data, "scope"):
            member = self._build_symbol(raw_member, module_id, symbol_id, symbol_id, out)
            symbol.members.append(member.id)
        return symbol

    def _build_param(self, data: Mapping[str, Any], owner: Symbol) -> Symbol:
        name = self._require_name(data)
        positional = self._bool(data, "positional", False)
        return Symbol(
            id=f"{owner.id}.{name}",
            name=name,
            kind=SymbolKind.PARAMETER,
            location=self._location(data),
            module=owner.module,
            parent=owner.id,
            docs=self._str(data, "details") or "",
            docs_location=self._field_location(data, "details"),
            types=self._str_list(data, "types"),
            default=self._scalar_text(data, "default"),
            positional=positional,
            named=self._bool(data, "named", not positional),
            required=self._bool(data, "required", False),
            variadic=self._bool(data, "variadic", False),
            settable=self._bool(data, "settable", False),
        )

    # ------------------------------------------------------------------
    # Field helpers

    def _location(self, data: Mapping[str, Any]) -> SourceLocation:
        line = data.get(_LINE_KEY)
        return SourceLocation(self.source, line if isinstance(line, int) else None)

    def _field_location(self, data: Mapping[str, Any], key: str) -> SourceLocation:
        lines = data.get(_FIELD_LINES_KEY)
        if isinstance(lines, dict) and isinstance(lines.get(key), int):
            return SourceLocation(self.source, lines[key])
        return self._location(data)

    def _require_path(self, data: Mapping[str, Any], key: str) -> str:
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise SchemaError(f"Missing required field '{key}'", self._location(data))
        path = value.strip()
        if not all(_NAME_PATTERN.match(part) for part in path.split(".")):
            raise SchemaError(f"Invalid {key} path '{path}'", self._field_location(data, key))
        return path

    def _require_name(self, data: Mapping[str, Any]) -> str:
        value = data.get("name")
        if not isinstance(value, str) or not _NAME_PATTERN.match(value.strip()):
            raise SchemaError(
                "Missing or invalid field 'name'" + (f": {value!r}" if value is not None else ""),
                self._location(data),
            )
        return value.strip()

    def _kind(self, data: Mapping[str, Any]) -> SymbolKind:
        raw = data.get("kind", SymbolKind.FUNCTION.value)
        try:
            kind = SymbolKind(str(raw).strip().lower())
        except ValueError:
            raise SchemaError(f"Unknown symbol kind '{raw}'", self._field_location(data, "kind")) from None
        if kind not in _MEMBER_KINDS:
            raise SchemaError(
                f"Symbol kind '{kind.value}' cannot be declared here", self._field_location(data, "kind")
            )
        return kind

    def _stability(self, data: Mapping[str, Any]) -> Stability:
        raw = data.get("stability")
        if raw is None:
            return Stability.STABLE
        try:
            return Stability(str(raw).strip().lower())
        except ValueError:
            raise SchemaError(
                f"Unknown stability '{raw}'", self._field_location(data, "stability")
            ) from None

    def _str(self, data: Mapping[str, Any], key: str) -> Optional[str]:
        value = data.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise SchemaError(f"Field '{key}' must be a string", self._field_location(data, key))
        return str(value)

    def _scalar_text(self, data: Mapping[str, Any], key: str) -> Optional[str]:
        if key not in data:
            return None
        value = data[key]
        if value is None:
            return "none"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise SchemaError(f"Field '{key}' must be a scalar", self._field_location(data, key))

    def _int(self, data: Mapping[str, Any], key: str) -> Optional[int]:
        value = data.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise SchemaError(f"Field '{key}' must be an integer", self._field_location(data, key))
        return value

    def _bool(self, data: Mapping[str, Any], key: str, default: bool) -> bool:
        value = data.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise SchemaError(f"Field '{key}' must be true or false", self._field_location(data, key))
        return value

    def _str_list(self, data: Mapping[str, Any], key: str) -> List[str]:
        value = data.get(key)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, Sequence) and all(
            isinstance(item, (str, int, float)) and not isinstance(item, bool) for item in value
        ):
            return [str(item) for item in value]
        raise SchemaError(f"Field '{key}' must be a list of strings", self._field_location(data, key))

    def _mapping_list(self, data: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
        value = data.get(key)
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
            raise SchemaError(f"Field '{key}' must be a list of mappings", self._field_location(data, key))
        return value

    def _references(self, data: Mapping[str, Any], key: str) -> List[CrossReference]:
        location = self._field_location(data, key)
        references = []
        for item in self._str_list(data, key):
            target = item.strip()
            kind = ReferenceKind.PAGE if target.startswith("/") else ReferenceKind.AUTO
            references.append(
                CrossReference(raw=target, target=target, kind=kind, location=location, span=(0, len(target)))
            )
        return references


def iter_scope(module_id: Optional[str]) -> Iterator[str]:
    """Yield ``a.b.c``, ``a.b``, ``a`` for the scope ``a.b.c``."""
    current = module_id
    while current:
        yield current
        current = current.rpartition(".")[0]


__all__ = [
    "DuplicateIdError",
    "LoadResult",
    "MetadataSource",
    "Registry",
    "RegistryError",
    "SchemaError",
    "iter_scope",
    "load",
]
