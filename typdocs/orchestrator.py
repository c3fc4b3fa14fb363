"""Pipeline orchestration: registry, pages, resolution, rendering, tree."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import ConfigError, DocsConfig, load_config
from .content.outline import AnchorAllocator
from .content.pages import discover_sources, load_page
from .content.parser import MalformedFrontMatter, parse_body
from .logging import get_logger, log_phase
from .models import (
    DEFAULT_FAIL_ON,
    Block,
    CrossReference,
    Diagnostic,
    DiagnosticKind,
    DiagnosticReport,
    ExampleBlock,
    Heading,
    Page,
    RenderedArtifact,
    ResolvedLink,
    SourceLocation,
    SymbolKind,
    block_references,
)
from .registry import DuplicateIdError, MetadataSource, Registry, load as load_registry
from .render import (
    Compiler,
    ExampleRenderer,
    Rasterizer,
    SearchContext,
    TypstCompiler,
    TypstRasterizer,
)
from .resolver import PageIndex, ResolutionContext, Resolver
from .serialize import write_output
from .stores import ArtifactCache, shared_cache
from .tree import DuplicateRouteError, PageTree, TreeBuilder

_METADATA_SUFFIXES = (".yml", ".yaml")


@dataclass
class BuildResult:
    """Outcome of one pipeline run."""

    tree: Optional[PageTree]
    report: DiagnosticReport
    artifacts: Dict[ExampleBlock, RenderedArtifact] = field(default_factory=dict)
    config: Optional[DocsConfig] = None

    @property
    def exit_code(self) -> int:
        fail_on = self.config.fail_on if self.config is not None else DEFAULT_FAIL_ON
        return 1 if self.report.failed(fail_on) else 0

    @property
    def page_count(self) -> int:
        return len(self.tree) if self.tree is not None else 0


@dataclass
class _Document:
    """Blocks to resolve, with the context they were written in."""

    owner: str
    blocks: Sequence[Block]
    context: ResolutionContext
    extra: Tuple[CrossReference, ...] = ()


class Orchestrator:
    """Coordinates the documentation build phases in strict order."""

    def __init__(
        self,
        compiler: Compiler | None = None,
        rasterizer: Rasterizer | None = None,
        cache: ArtifactCache | None = None,
        *,
        tree_builder: TreeBuilder | None = None,
        workers: Optional[int] = None,
        use_cache: bool = True,
    ) -> None:
        self._compiler = compiler
        self._rasterizer = rasterizer
        self._cache = cache
        self._tree_builder = tree_builder
        self._workers = workers
        self._use_cache = use_cache
        self.logger = get_logger("orchestrator")

    def run(self, path: Union[str, Path]) -> BuildResult:
        """Build the documentation rooted at ``path`` without writing anything."""
        root = Path(path).expanduser().resolve()
        self.logger.info("Starting build for %s", root)
        config = self._load_config(root)
        report = DiagnosticReport()

        with log_phase(self.logger, "registry"):
            registry, loaded_metadata = self._load_registry(config, report)
        if registry is None:
            return self._abort(report, config)

        with log_phase(self.logger, "pages"):
            pages, loaded_pages = self._parse_pages(config, report)
        if not loaded_metadata and not loaded_pages:
            self.logger.error("No documentation sources could be loaded from %s", root)
            return self._abort(report, config)
        if self._check_routes(pages, report):
            return self._abort(report, config)

        symbol_blocks = self._parse_symbol_docs(registry)
        index = self._build_page_index(pages, registry, symbol_blocks)
        with log_phase(self.logger, "resolve"):
            links = self._resolve(registry, index, self._documents(pages, registry, symbol_blocks), report)

        examples = _collect_examples(pages, symbol_blocks)
        with log_phase(self.logger, "render"):
            artifacts = self._render(config, examples, report)

        builder = self._tree_builder or TreeBuilder(title=config.title)
        try:
            built = builder.build(
                pages,
                registry,
                symbol_blocks=symbol_blocks,
                links=links,
                artifacts=artifacts,
            )
        except DuplicateRouteError as exc:
            self.logger.error("%s: %s", exc.location, exc)
            report.add(Diagnostic(DiagnosticKind.DUPLICATE_ROUTE, exc.location, str(exc)))
            return self._abort(report, config, artifacts)
        report.extend(built.diagnostics)

        result = BuildResult(tree=built.tree, report=report, artifacts=artifacts, config=config)
        self.logger.info(
            "Built %d pages with %d diagnostics (%s)",
            result.page_count,
            len(report),
            "failed" if result.exit_code else "ok",
        )
        return result

    def build(self, path: Union[str, Path], output_dir: Union[str, Path, None] = None) -> BuildResult:
        """Run the pipeline and serialise the outcome."""
        result = self.run(path)
        target: Path
        if output_dir is not None:
            target = Path(output_dir).expanduser().resolve()
        elif result.config is not None:
            target = result.config.root / result.config.output_dir
        else:
            target = Path(path).expanduser().resolve() / "dist"
        write_output(result, target)
        return result

    # ------------------------------------------------------------------
    # Phases

    def _load_config(self, root: Path) -> DocsConfig:
        try:
            return load_config(root)
        except OSError as exc:
            raise ConfigError(f"Unable to read configuration under {root}: {exc}") from exc

    def _load_registry(
        self, config: DocsConfig, report: DiagnosticReport
    ) -> Tuple[Optional[Registry], int]:
        sources, unreadable = _metadata_sources(config.reference_path)
        for diagnostic in unreadable:
            self.logger.warning("Skipping %s: %s", diagnostic.location, diagnostic.message)
            report.add(diagnostic)
        self.logger.info("Loading %d reference sources", len(sources))
        try:
            loaded = load_registry(sources, reference_route=config.reference_route)
        except DuplicateIdError as exc:
            self.logger.error("%s: %s", exc.location, exc)
            report.add(Diagnostic(DiagnosticKind.DUPLICATE_ID, exc.location, str(exc)))
            return None, 0
        report.extend(loaded.diagnostics)
        return loaded.registry, len(loaded.registry.modules())

    def _parse_pages(self, config: DocsConfig, report: DiagnosticReport) -> Tuple[List[Page], int]:
        content_root = config.content_path
        paths = discover_sources(content_root)
        self.logger.info("Parsing %d content sources", len(paths))
        if not paths:
            return [], 0

        def _parse(path: Path) -> Union[Page, Diagnostic]:
            relative = PurePosixPath(path.relative_to(content_root).as_posix())
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                return Diagnostic(
                    DiagnosticKind.MALFORMED_FRONT_MATTER,
                    SourceLocation(relative.as_posix()),
                    f"Unable to read source: {exc}",
                )
            try:
                return load_page(text, relative)
            except MalformedFrontMatter as exc:
                return Diagnostic(
                    DiagnosticKind.MALFORMED_FRONT_MATTER,
                    SourceLocation(relative.as_posix(), exc.line),
                    str(exc),
                )

        with ThreadPoolExecutor(max_workers=self._worker_count(config), thread_name_prefix="typdocs-parse") as pool:
            outcomes = list(pool.map(_parse, paths))

        pages: List[Page] = []
        for outcome in outcomes:
            if isinstance(outcome, Diagnostic):
                self.logger.warning("Skipping %s: %s", outcome.location, outcome.message)
                report.add(outcome)
            else:
                pages.append(outcome)
        return pages, len(pages)

    def _check_routes(self, pages: Sequence[Page], report: DiagnosticReport) -> bool:
        seen: Dict[str, Page] = {}
        duplicated = False
        for page in sorted(pages, key=lambda item: item.source):
            first = seen.get(page.route)
            if first is None:
                seen[page.route] = page
                continue
            duplicated = True
            message = f"Duplicate route '{page.route}' (first declared at {first.location})"
            location = page.location or SourceLocation(page.source, 1)
            self.logger.error("%s: %s", location, message)
            report.add(Diagnostic(DiagnosticKind.DUPLICATE_ROUTE, location, message))
        return duplicated

    def _parse_symbol_docs(self, registry: Registry) -> Dict[str, List[Block]]:
        parsed: Dict[str, List[Block]] = {}
        for symbol in registry.symbols():
            if symbol.kind is SymbolKind.PARAMETER:
                continue
            # A symbol page carries its own docs, the parameter headings and each
            # parameter's docs, so they draw from one set of anchors.
            anchors = AnchorAllocator()
            if symbol.params:
                anchors.reserve("parameters")
            for param_id in symbol.params:
                param = registry.get(param_id)
                if param is not None:
                    anchors.reserve(registry.anchor_of(param.id) or param.name)
            if symbol.docs:
                parsed[symbol.id] = _parse_docs(symbol.docs, symbol.docs_location or symbol.location, anchors)
            for param_id in symbol.params:
                param = registry.get(param_id)
                if param is not None and param.docs:
                    parsed[param.id] = _parse_docs(param.docs, param.docs_location or param.location, anchors)
        for group in registry.groups():
            if group.details:
                parsed[group.id] = _parse_docs(group.details, group.docs_location or group.location)
        return parsed

    def _build_page_index(
        self, pages: Sequence[Page], registry: Registry, symbol_blocks: Mapping[str, Sequence[Block]]
    ) -> PageIndex:
        index = PageIndex()
        index.add("/", "Home")
        if len(registry):
            index.add(registry.reference_route, "Reference")
        for item_id in registry.ids():
            symbol = registry.get(item_id)
            if symbol is not None and symbol.kind is SymbolKind.PARAMETER:
                continue
            anchors = set(_heading_anchors(symbol_blocks.get(item_id, ())))
            if symbol is not None and symbol.params:
                anchors.add("parameters")
                for param_id in symbol.params:
                    anchors.update(_heading_anchors(symbol_blocks.get(param_id, ())))
                    anchor = registry.anchor_of(param_id)
                    if anchor:
                        anchors.add(anchor)
            index.add(registry.route_of(item_id), registry.title_of(item_id), anchors)
        for page in pages:
            index.add(page.route, page.title, page.anchors)
        return index

    def _documents(
        self, pages: Sequence[Page], registry: Registry, symbol_blocks: Mapping[str, Sequence[Block]]
    ) -> Iterable[_Document]:
        for page in pages:
            yield _Document(
                owner=page.source,
                blocks=page.blocks,
                context=ResolutionContext(route=page.route, scope=page.scope, anchors=frozenset(page.anchors)),
            )
        for item_id in registry.ids():
            symbol = registry.get(item_id)
            scope = item_id
            if symbol is not None and symbol.kind is SymbolKind.PARAMETER:
                scope = symbol.parent
            blocks = symbol_blocks.get(item_id, ())
            extra = tuple(symbol.see_also) if symbol is not None else ()
            if not blocks and not extra:
                continue
            yield _Document(
                owner=item_id,
                blocks=blocks,
                context=ResolutionContext(route=registry.route_of(item_id), scope=scope),
                extra=extra,
            )

    def _resolve(
        self,
        registry: Registry,
        index: PageIndex,
        documents: Iterable[_Document],
        report: DiagnosticReport,
    ) -> Dict[CrossReference, ResolvedLink]:
        resolver = Resolver(registry, index)
        links: Dict[CrossReference, ResolvedLink] = {}
        broken = 0
        for document in documents:
            references = list(block_references(document.blocks)) + list(document.extra)
            resolved, diagnostics = resolver.resolve_all(references, document.context)
            links.update(resolved)
            for diagnostic in diagnostics:
                self.logger.warning("%s: %s", diagnostic.location, diagnostic.message)
            broken += len(diagnostics)
            report.extend(diagnostics)
        self.logger.info("Resolved %d references (%d broken)", len(links), broken)
        return links

    def _render(
        self, config: DocsConfig, examples: Sequence[ExampleBlock], report: DiagnosticReport
    ) -> Dict[ExampleBlock, RenderedArtifact]:
        if not examples:
            return {}
        cache = self._resolve_cache(config)
        context = SearchContext(root=config.root)
        renderer = ExampleRenderer(
            self._compiler or TypstCompiler(config.render.compiler, timeout=config.render.timeout),
            self._rasterizer
            or TypstRasterizer(config.render.compiler, timeout=config.render.timeout, context=context),
            cache=cache,
            settings=config.render,
            search_context=context,
        )
        self.logger.info("Rendering %d examples", len(examples))
        outcome = renderer.render_all(examples, workers=self._worker_count(config))
        for diagnostic in outcome.diagnostics:
            self.logger.warning("%s: %s", diagnostic.location, diagnostic.message)
        report.extend(outcome.diagnostics)
        if cache.path is not None:
            cache.prune(artifact.key for artifact in outcome.artifacts.values())
        try:
            cache.persist()
        except OSError as exc:
            self._log_exception("Unable to persist example cache", exc)
        return outcome.artifacts

    # ------------------------------------------------------------------
    # Helpers

    def _resolve_cache(self, config: DocsConfig) -> ArtifactCache:
        if self._cache is not None:
            return self._cache
        if not self._use_cache:
            return ArtifactCache()
        return shared_cache(config.render.cache_dir)

    def _worker_count(self, config: DocsConfig) -> int:
        return max(1, self._workers or config.render.workers)

    def _abort(
        self,
        report: DiagnosticReport,
        config: DocsConfig,
        artifacts: Optional[Dict[ExampleBlock, RenderedArtifact]] = None,
    ) -> BuildResult:
        report.aborted = True
        self.logger.error("Build aborted with %d diagnostics; no page tree emitted", len(report))
        return BuildResult(tree=None, report=report, artifacts=dict(artifacts or {}), config=config)

    def _log_exception(self, message: str, exc: Exception) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.exception("%s: %s", message, exc)
        else:
            self.logger.error("%s: %s", message, exc)


def _metadata_sources(reference_root: Path) -> Tuple[List[MetadataSource], List[Diagnostic]]:
    sources: List[MetadataSource] = []
    unreadable: List[Diagnostic] = []
    if not reference_root.is_dir():
        return sources, unreadable
    paths = sorted(
        path
        for path in reference_root.rglob("*")
        if path.is_file() and path.suffix.lower() in _METADATA_SUFFIXES
    )
    for path in paths:
        name = path.relative_to(reference_root.parent).as_posix()
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            unreadable.append(
                Diagnostic(DiagnosticKind.SCHEMA_ERROR, SourceLocation(name), f"Unable to read metadata: {exc}")
            )
            continue
        sources.append(MetadataSource(name=name, text=text))
    return sources, unreadable


def _parse_docs(
    text: str, location: SourceLocation, anchors: Optional[AnchorAllocator] = None
) -> List[Block]:
    return parse_body(text, source=location.source, first_line=location.line or 1, anchors=anchors)


def _heading_anchors(blocks: Iterable[Block]) -> Iterable[str]:
    return [block.anchor for block in blocks if isinstance(block, Heading)]


def _collect_examples(
    pages: Sequence[Page], symbol_blocks: Mapping[str, Sequence[Block]]
) -> List[ExampleBlock]:
    examples: List[ExampleBlock] = []
    for page in sorted(pages, key=lambda item: item.source):
        examples.extend(block for block in page.blocks if isinstance(block, ExampleBlock))
    for item_id in sorted(symbol_blocks):
        examples.extend(block for block in symbol_blocks[item_id] if isinstance(block, ExampleBlock))
    return examples


__all__ = ["BuildResult", "Orchestrator"]
