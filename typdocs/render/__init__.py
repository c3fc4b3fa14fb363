"""Example rendering and code highlighting."""

from .collaborators import (
    CompileError,
    CompiledDocument,
    Compiler,
    Rasterizer,
    RenderError,
    RenderTimeout,
    SearchContext,
    TypstCompiler,
    TypstRasterizer,
)
from .highlight import StyledSpan, highlight
from .renderer import (
    RENDER_FORMAT_VERSION,
    ExampleRenderer,
    RenderOutcome,
    diagnostics_for,
    normalize_snippet,
    prepare_source,
)

__all__ = [
    "CompileError",
    "CompiledDocument",
    "Compiler",
    "ExampleRenderer",
    "RENDER_FORMAT_VERSION",
    "Rasterizer",
    "RenderError",
    "RenderOutcome",
    "RenderTimeout",
    "SearchContext",
    "StyledSpan",
    "TypstCompiler",
    "TypstRasterizer",
    "diagnostics_for",
    "highlight",
    "normalize_snippet",
    "prepare_source",
]
