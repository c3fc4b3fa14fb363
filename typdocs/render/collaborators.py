"""Contracts for the external compiler and rasterizer, plus Typst CLI adapters."""

from __future__ import annotations

import re
import struct
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from ..models import RasterImage

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_PAGE_FILE = re.compile(r"^page-(\d+)\.png$")


class CompileError(RuntimeError):
    """The compiler rejected a source; ``diagnostics`` holds its messages."""

    def __init__(self, diagnostics: Sequence[str]) -> None:
        cleaned = tuple(item for item in diagnostics if item.strip())
        super().__init__(cleaned[0] if cleaned else "compilation failed")
        self.diagnostics = cleaned


class RenderError(RuntimeError):
    """The rasterizer could not turn a compiled document into images."""


class RenderTimeout(RuntimeError):
    """A compile or rasterize call exceeded its time limit."""


@dataclass(frozen=True)
class SearchContext:
    """Where the compiler looks for packages and fonts."""

    root: Optional[Path] = None
    package_path: Optional[Path] = None
    font_paths: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class CompiledDocument:
    source: str
    data: bytes = b""
    format: str = "pdf"
    metadata: dict = field(default_factory=dict, compare=False, hash=False)


class Compiler(Protocol):
    """Deterministic compiler: identical input gives identical output."""

    def compile(self, source: str, context: SearchContext) -> CompiledDocument:
        """Compile ``source`` or raise :class:`CompileError`."""


class Rasterizer(Protocol):
    def render(self, document: CompiledDocument, scale: float) -> List[RasterImage]:
        """Rasterize every page at ``scale`` pixels per point or raise :class:`RenderError`."""


class TypstCompiler:
    """Compiles sources with the ``typst`` command line tool."""

    def __init__(self, executable: str = "typst", *, timeout: Optional[float] = None) -> None:
        self.executable = executable
        self.timeout = timeout

    @property
    def signature(self) -> str:
        return f"typst-cli:{self.executable}"

    def compile(self, source: str, context: SearchContext) -> CompiledDocument:
        with tempfile.TemporaryDirectory(prefix="typdocs-") as workdir:
            output = Path(workdir) / "document.pdf"
            completed = _run_typst(
                self.executable,
                ["--format", "pdf", *_context_args(context, workdir), "-", str(output)],
                source,
                self.timeout,
            )
            if completed.returncode != 0:
                raise CompileError(_error_lines(completed.stderr))
            return CompiledDocument(source=source, data=output.read_bytes(), format="pdf")


class TypstRasterizer:
    """Rasterizes compiled documents to PNG pages with the ``typst`` CLI."""

    def __init__(
        self,
        executable: str = "typst",
        *,
        timeout: Optional[float] = None,
        context: SearchContext | None = None,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.context = context or SearchContext()

    @property
    def signature(self) -> str:
        return f"typst-cli-png:{self.executable}"

    def render(self, document: CompiledDocument, scale: float) -> List[RasterImage]:
        with tempfile.TemporaryDirectory(prefix="typdocs-") as workdir:
            pattern = Path(workdir) / "page-{p}.png"
            ppi = f"{72.0 * scale:g}"
            completed = _run_typst(
                self.executable,
                ["--format", "png", "--ppi", ppi, *_context_args(self.context, workdir), "-", str(pattern)],
                document.source,
                self.timeout,
            )
            if completed.returncode != 0:
                raise RenderError("; ".join(_error_lines(completed.stderr)) or "rasterization failed")
            pages = sorted(
                (int(match.group(1)), path)
                for path in Path(workdir).iterdir()
                if (match := _PAGE_FILE.match(path.name))
            )
            if not pages:
                raise RenderError("rasterizer produced no pages")
            return [_png_image(path.read_bytes()) for _, path in pages]


def _run_typst(
    executable: str, args: List[str], source: str, timeout: Optional[float]
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            [executable, "compile", *args],
            input=source,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            f"Unable to locate '{executable}'. Install the typst CLI or set TYPDOCS_COMPILER."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise RenderTimeout(f"'{executable} compile' exceeded {timeout:g}s") from exc


def _context_args(context: SearchContext, workdir: str) -> List[str]:
    args = ["--root", str(context.root or workdir)]
    if context.package_path is not None:
        args.extend(["--package-path", str(context.package_path)])
    for font_path in context.font_paths:
        args.extend(["--font-path", str(font_path)])
    return args


def _error_lines(stderr: str) -> List[str]:
    lines = [line.rstrip() for line in stderr.splitlines() if line.strip()]
    errors = [line for line in lines if line.lstrip().startswith("error")]
    return errors or lines


def _png_image(data: bytes) -> RasterImage:
    if data[:8] != _PNG_SIGNATURE or len(data) < 24:
        raise RenderError("rasterizer returned an invalid PNG")
    width, height = struct.unpack(">II", data[16:24])
    return RasterImage(data=data, width=width, height=height, format="png")


__all__ = [
    "CompileError",
    "CompiledDocument",
    "Compiler",
    "RenderError",
    "RenderTimeout",
    "Rasterizer",
    "SearchContext",
    "TypstCompiler",
    "TypstRasterizer",
]
