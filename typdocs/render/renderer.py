"""Example rendering: cache lookup, compile, rasterize, with per-task timeouts."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from ..config import RenderSettings
from ..logging import get_logger
from ..models import (
    ArtifactStatus,
    Diagnostic,
    DiagnosticKind,
    ExampleBlock,
    RenderConfig,
    RenderedArtifact,
)
from ..stores import ArtifactCache
from .collaborators import (
    CompileError,
    CompiledDocument,
    Compiler,
    Rasterizer,
    RenderError,
    RenderTimeout,
    SearchContext,
)

RENDER_FORMAT_VERSION = "1"

T = TypeVar("T")


def normalize_snippet(text: str) -> str:
    """Normalise line endings and surrounding whitespace of an example."""
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def prepare_source(snippet: str, config: RenderConfig, margin: str) -> str:
    """Wrap a snippet in the page preamble and the wrapper its mode needs."""
    body = snippet
    if config.mode == "code":
        body = "#{\n" + snippet + "\n}"
    elif config.mode == "math":
        body = "$ " + snippet + " $"
    preamble = f"#set page(width: {config.width}, height: {config.height}, margin: {margin})"
    return f"{preamble}\n{body}\n"


@dataclass
class RenderOutcome:
    """Artifacts per example block plus the diagnostics they produced."""

    artifacts: Dict[ExampleBlock, RenderedArtifact] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)


class ExampleRenderer:
    """Turns example blocks into rendered artifacts through the shared cache."""

    def __init__(
        self,
        compiler: Compiler,
        rasterizer: Rasterizer,
        *,
        cache: ArtifactCache | None = None,
        settings: RenderSettings | None = None,
        search_context: SearchContext | None = None,
    ) -> None:
        self.compiler = compiler
        self.rasterizer = rasterizer
        self.cache = cache if cache is not None else ArtifactCache()
        self.settings = settings or RenderSettings()
        self.search_context = search_context or SearchContext()
        self.logger = get_logger("render")

    def effective_config(self, block: ExampleBlock) -> RenderConfig:
        config = block.config
        return replace(
            config,
            scale=config.scale or self.settings.scale,
            width=config.width or self.settings.page_width,
            height=config.height or self.settings.page_height,
        )

    def cache_key(self, block: ExampleBlock) -> str:
        payload = {
            "version": RENDER_FORMAT_VERSION,
            "compiler": _signature(self.compiler),
            "rasterizer": _signature(self.rasterizer),
            "source": normalize_snippet(block.source),
            "config": self.effective_config(block).to_dict(),
            "margin": self.settings.margin,
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def render(self, block: ExampleBlock) -> RenderedArtifact:
        key = self.cache_key(block)
        artifact, cached = self.cache.get_or_create(key, lambda: self._execute(key, block))
        if cached:
            self.logger.debug("Using cached render for %s (%s)", block.location, key[:12])
        return artifact

    def render_all(
        self, blocks: Iterable[ExampleBlock], *, workers: Optional[int] = None
    ) -> RenderOutcome:
        ordered = list(dict.fromkeys(blocks))
        outcome = RenderOutcome()
        if not ordered:
            return outcome
        max_workers = max(1, workers or self.settings.workers)
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="typdocs-render") as pool:
            futures = [(block, pool.submit(self.render, block)) for block in ordered]
            for block, future in futures:
                artifact = future.result()
                outcome.artifacts[block] = artifact
                diagnostic = diagnostics_for(block, artifact, timeout=self.settings.timeout)
                if diagnostic is not None:
                    outcome.diagnostics.append(diagnostic)
        return outcome

    def _execute(self, key: str, block: ExampleBlock) -> RenderedArtifact:
        config = self.effective_config(block)
        source = prepare_source(normalize_snippet(block.source), config, self.settings.margin)
        deadline = time.monotonic() + self.settings.timeout
        self.logger.debug("Compiling example at %s", block.location)
        try:
            document: CompiledDocument = self._call(
                self.compiler.compile, deadline, source, self.search_context
            )
        except CompileError as exc:
            status = ArtifactStatus.EXPECTED_ERROR if config.expect_error else ArtifactStatus.COMPILE_ERROR
            return RenderedArtifact(key, status, error=str(exc), diagnostics=exc.diagnostics)
        except RenderTimeout as exc:
            return RenderedArtifact(key, ArtifactStatus.TIMEOUT, error=str(exc))
        except Exception as exc:
            self._log_exception(f"Compiler failed for example at {block.location}", exc)
            return RenderedArtifact(key, ArtifactStatus.RENDER_ERROR, error=str(exc), transient=True)

        if config.expect_error:
            return RenderedArtifact(
                key,
                ArtifactStatus.UNEXPECTED_SUCCESS,
                error="Example is marked as an expected error but compiled without errors",
            )

        try:
            images = self._call(self.rasterizer.render, deadline, document, config.scale)
        except RenderError as exc:
            return RenderedArtifact(key, ArtifactStatus.RENDER_ERROR, error=str(exc))
        except RenderTimeout as exc:
            return RenderedArtifact(key, ArtifactStatus.TIMEOUT, error=str(exc))
        except Exception as exc:
            self._log_exception(f"Rasterizer failed for example at {block.location}", exc)
            return RenderedArtifact(key, ArtifactStatus.RENDER_ERROR, error=str(exc), transient=True)
        return RenderedArtifact(key, ArtifactStatus.OK, images=tuple(images))

    def _call(self, func: Callable[..., T], deadline: float, *args: Any) -> T:
        """Run ``func`` on a daemon thread and give up once ``deadline`` passes."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RenderTimeout(f"Example exceeded the {self.settings.timeout:g}s render timeout")
        future: Future = Future()

        def _worker() -> None:
            try:
                future.set_result(func(*args))
            except BaseException as exc:
                future.set_exception(exc)

        thread = threading.Thread(target=_worker, name="typdocs-example", daemon=True)
        thread.start()
        try:
            return future.result(timeout=remaining)
        except FutureTimeout as exc:
            raise RenderTimeout(
                f"Example exceeded the {self.settings.timeout:g}s render timeout"
            ) from exc

    def _log_exception(self, message: str, exc: Exception) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.exception("%s: %s", message, exc)
        else:
            self.logger.warning("%s: %s", message, exc)


def diagnostics_for(
    block: ExampleBlock, artifact: RenderedArtifact, *, timeout: Optional[float] = None
) -> Optional[Diagnostic]:
    """Map an artifact status to the diagnostic it implies for ``block``."""
    status = artifact.status
    if status.succeeded:
        return None
    if status is ArtifactStatus.COMPILE_ERROR:
        return Diagnostic(
            DiagnosticKind.COMPILE_FAILURE,
            block.location,
            f"Example failed to compile: {artifact.error or 'unknown error'}",
        )
    if status is ArtifactStatus.UNEXPECTED_SUCCESS:
        return Diagnostic(
            DiagnosticKind.RENDER_FAILURE,
            block.location,
            "Example is marked as an expected error but compiled without errors",
        )
    if status is ArtifactStatus.TIMEOUT:
        limit = f" after {timeout:g}s" if timeout else ""
        return Diagnostic(DiagnosticKind.RENDER_FAILURE, block.location, f"Example timed out{limit}")
    return Diagnostic(
        DiagnosticKind.RENDER_FAILURE,
        block.location,
        f"Example could not be rendered: {artifact.error or 'unknown error'}",
    )


def _signature(collaborator: object) -> str:
    signature = getattr(collaborator, "signature", None)
    if isinstance(signature, str) and signature:
        return signature
    cls = collaborator.__class__
    return f"{cls.__module__}.{cls.__qualname__}"


__all__ = [
    "ExampleRenderer",
    "RENDER_FORMAT_VERSION",
    "RenderOutcome",
    "diagnostics_for",
    "normalize_snippet",
    "prepare_source",
]
