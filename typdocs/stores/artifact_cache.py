"""Content-addressed cache for rendered examples."""

from __future__ import annotations

import json
import re
import threading
import zlib
from concurrent.futures import Future
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..logging import get_logger
from ..models import ArtifactStatus, RasterImage, RenderedArtifact

_CACHE_VERSION = 1
_INDEX_NAME = "index.json"
_DEFAULT_SHARDS = 16
_IMAGE_FILE = re.compile(r"^[0-9a-f]{16,}-\d+\.\w+$")

logger = get_logger("stores.artifacts")


class _Shard:
    __slots__ = ("lock", "entries", "pending")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: Dict[str, RenderedArtifact] = {}
        self.pending: Dict[str, Future[RenderedArtifact]] = {}


class ArtifactCache:
    """Stores rendered artifacts keyed by the hash of their inputs.

    Keys are spread over lock-striped shards, so unrelated keys never wait on
    each other. ``get_or_create`` computes a missing key once: concurrent
    callers asking for the same key wait for the first computation.
    """

    def __init__(self, path: Path | None = None, *, shards: int = _DEFAULT_SHARDS) -> None:
        self._path = path
        self._shards = [_Shard() for _ in range(max(1, shards))]
        self._dirty = False
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        if self._path is not None:
            self._load(self._path)

    @property
    def path(self) -> Optional[Path]:
        """Directory the cache persists to, or ``None`` for an in-memory cache."""
        return self._path

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        shard = self._shard(key)
        with shard.lock:
            return key in shard.entries

    def get(self, key: str) -> Optional[RenderedArtifact]:
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.get(key)

    def store(self, artifact: RenderedArtifact) -> None:
        if not artifact.cacheable:
            return
        shard = self._shard(artifact.key)
        with shard.lock:
            shard.entries[artifact.key] = artifact
        self._dirty = True

    def get_or_create(
        self, key: str, factory: Callable[[], RenderedArtifact]
    ) -> Tuple[RenderedArtifact, bool]:
        """Return ``(artifact, cached)``, running ``factory`` only on a true miss."""
        shard = self._shard(key)
        with shard.lock:
            cached = shard.entries.get(key)
            if cached is not None:
                self._count(hit=True)
                return cached, True
            pending = shard.pending.get(key)
            owner = pending is None
            if pending is None:
                pending = Future()
                shard.pending[key] = pending

        if not owner:
            self._count(hit=True)
            return pending.result(), True

        self._count(hit=False)
        try:
            artifact = factory()
        except BaseException as exc:
            with shard.lock:
                shard.pending.pop(key, None)
            pending.set_exception(exc)
            raise
        with shard.lock:
            if artifact.cacheable:
                shard.entries[key] = artifact
                self._dirty = True
            shard.pending.pop(key, None)
        pending.set_result(artifact)
        return artifact, False

    def prune(self, keys_to_keep: Iterable[str]) -> None:
        keep = set(keys_to_keep)
        for shard in self._shards:
            with shard.lock:
                removed = [key for key in shard.entries if key not in keep]
                for key in removed:
                    shard.entries.pop(key, None)
                if removed:
                    self._dirty = True

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
        self._dirty = True

    def persist(self) -> None:
        if not self._dirty or self._path is None:
            return
        self._path.mkdir(parents=True, exist_ok=True)
        entries: Dict[str, Dict[str, object]] = {}
        referenced: Set[str] = set()
        for shard in self._shards:
            with shard.lock:
                snapshot = list(shard.entries.values())
            for artifact in snapshot:
                entry, files = self._write_entry(artifact)
                entries[artifact.key] = entry
                referenced.update(files)
        payload = {
            "version": _CACHE_VERSION,
            "entries": entries,
            "updated_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
        (self._path / _INDEX_NAME).write_text(
            json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8"
        )
        self._remove_orphans(referenced)
        self._dirty = False

    # ------------------------------------------------------------------
    # Internal helpers

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def _count(self, *, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def _remove_orphans(self, referenced: Set[str]) -> None:
        assert self._path is not None
        for candidate in self._path.iterdir():
            if _IMAGE_FILE.match(candidate.name) and candidate.name not in referenced:
                try:
                    candidate.unlink()
                except OSError as exc:
                    logger.debug("Unable to remove stale cache image %s: %s", candidate, exc)

    def _write_entry(self, artifact: RenderedArtifact) -> Tuple[Dict[str, object], List[str]]:
        assert self._path is not None
        images: List[Dict[str, object]] = []
        files: List[str] = []
        for index, image in enumerate(artifact.images):
            filename = f"{artifact.key}-{index}.{image.format}"
            target = self._path / filename
            if not target.exists():
                target.write_bytes(image.data)
            images.append(
                {"file": filename, "width": image.width, "height": image.height, "format": image.format}
            )
            files.append(filename)
        entry = {
            "status": artifact.status.value,
            "error": artifact.error,
            "diagnostics": list(artifact.diagnostics),
            "images": images,
        }
        return entry, files

    def _load(self, path: Path) -> None:
        index_path = path / _INDEX_NAME
        try:
            data = json.loads(index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError):
            logger.debug("Ignoring unreadable artifact cache at %s", index_path)
            return
        if not isinstance(data, dict) or data.get("version") != _CACHE_VERSION:
            return
        entries = data.get("entries")
        if not isinstance(entries, dict):
            return
        loaded = 0
        for key, raw in entries.items():
            artifact = self._read_entry(path, key, raw)
            if artifact is None:
                continue
            self._shard(key).entries[key] = artifact
            loaded += 1
        logger.debug("Loaded %d cached examples from %s", loaded, path)
        self._dirty = False

    @staticmethod
    def _read_entry(path: Path, key: object, raw: object) -> Optional[RenderedArtifact]:
        if not isinstance(key, str) or not isinstance(raw, dict):
            return None
        try:
            status = ArtifactStatus(raw.get("status"))
        except ValueError:
            return None
        images: List[RasterImage] = []
        for item in raw.get("images") or []:
            if not isinstance(item, dict) or not isinstance(item.get("file"), str):
                return None
            try:
                data = (path / item["file"]).read_bytes()
            except OSError:
                return None
            images.append(
                RasterImage(
                    data=data,
                    width=int(item.get("width") or 0),
                    height=int(item.get("height") or 0),
                    format=str(item.get("format") or "png"),
                )
            )
        error = raw.get("error")
        diagnostics = raw.get("diagnostics") or []
        return RenderedArtifact(
            key=key,
            status=status,
            images=tuple(images),
            error=error if isinstance(error, str) else None,
            diagnostics=tuple(str(item) for item in diagnostics if isinstance(item, str)),
        )


_SHARED: Dict[Optional[Path], ArtifactCache] = {}
_SHARED_LOCK = threading.Lock()


def shared_cache(path: Path | None = None) -> ArtifactCache:
    """Return the process-wide cache for ``path`` (in-memory when ``None``)."""
    resolved = path.resolve() if path is not None else None
    with _SHARED_LOCK:
        cache = _SHARED.get(resolved)
        if cache is None:
            cache = ArtifactCache(resolved)
            _SHARED[resolved] = cache
        return cache


__all__ = ["ArtifactCache", "shared_cache"]
