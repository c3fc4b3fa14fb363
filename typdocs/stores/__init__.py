"""Persistent stores used across pipeline runs."""

from .artifact_cache import ArtifactCache, shared_cache

__all__ = ["ArtifactCache", "shared_cache"]
