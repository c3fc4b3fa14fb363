"""Configuration loading for typdocs (typdocs.yml)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .models import DEFAULT_FAIL_ON, DiagnosticKind

CONFIG_FILENAME = "typdocs.yml"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


@dataclass
class RenderSettings:
    """Example rendering settings from typdocs.yml."""

    workers: int = 4
    timeout: float = 30.0
    scale: float = 2.0
    compiler: str = "typst"
    cache_dir: Optional[Path] = None
    page_width: str = "240pt"
    page_height: str = "auto"
    margin: str = "10pt"


@dataclass
class DocsConfig:
    """Represents the high-level settings defined in typdocs.yml."""

    root: Path
    title: str = "Documentation"
    content_dir: Path = Path("content")
    reference_dir: Path = Path("reference")
    output_dir: Path = Path("dist")
    reference_route: str = "/reference/"
    fail_on: Tuple[DiagnosticKind, ...] = DEFAULT_FAIL_ON
    render: RenderSettings = field(default_factory=RenderSettings)

    @property
    def content_path(self) -> Path:
        return self.root / self.content_dir

    @property
    def reference_path(self) -> Path:
        return self.root / self.reference_dir


def load_config(config_path: Path) -> DocsConfig:
    """Load configuration from disk, applying environment overrides."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    if not config_file.exists():
        return _apply_env(DocsConfig(root=root))

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    config = DocsConfig(root=root)
    config.title = _as_str(data.get("title")) or config.title
    content_dir = _as_str(data.get("content_dir"))
    if content_dir:
        config.content_dir = Path(content_dir)
    reference_dir = _as_str(data.get("reference_dir"))
    if reference_dir:
        config.reference_dir = Path(reference_dir)
    output_dir = _as_str(data.get("output_dir"))
    if output_dir:
        config.output_dir = Path(output_dir)
    reference_route = _as_str(data.get("reference_route"))
    if reference_route:
        config.reference_route = "/" + reference_route.strip("/") + "/"
    if "fail_on" in data:
        config.fail_on = _as_kinds(data.get("fail_on"))

    render_data = _as_dict(data.get("render"))
    if render_data:
        render = config.render
        render.workers = max(1, _as_int(render_data.get("workers")) or render.workers)
        timeout = _as_float(render_data.get("timeout"))
        if timeout is not None and timeout > 0:
            render.timeout = timeout
        scale = _as_float(render_data.get("scale"))
        if scale is not None and scale > 0:
            render.scale = scale
        render.compiler = _as_str(render_data.get("compiler")) or render.compiler
        cache_dir = _as_str(render_data.get("cache_dir"))
        if cache_dir:
            render.cache_dir = root / cache_dir
        render.page_width = _as_str(render_data.get("page_width")) or render.page_width
        render.page_height = _as_str(render_data.get("page_height")) or render.page_height
        render.margin = _as_str(render_data.get("margin")) or render.margin

    return _apply_env(config)


def _apply_env(config: DocsConfig) -> DocsConfig:
    compiler = os.getenv("TYPDOCS_COMPILER")
    if compiler:
        config.render.compiler = compiler
    workers = _as_int(os.getenv("TYPDOCS_WORKERS"))
    if workers:
        config.render.workers = max(1, workers)
    timeout = _as_float(os.getenv("TYPDOCS_RENDER_TIMEOUT"))
    if timeout is not None and timeout > 0:
        config.render.timeout = timeout
    return config


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _as_kinds(value: Any) -> Tuple[DiagnosticKind, ...]:
    kinds: List[DiagnosticKind] = []
    for name in _as_str_list(value):
        normalized = name.strip().lower().replace("_", "-")
        try:
            kinds.append(DiagnosticKind(normalized))
        except ValueError as exc:
            raise ConfigError(f"Unknown diagnostic kind in fail_on: {name}") from exc
    return tuple(kinds)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


__all__ = ["CONFIG_FILENAME", "ConfigError", "DocsConfig", "RenderSettings", "load_config"]
