from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from tests._fixtures.collaborators import RecordingCompiler, RecordingRasterizer
from tests._fixtures.docs_builder import DocsBuilder


@pytest.fixture
def docs_builder(tmp_path: Path) -> DocsBuilder:
    """Provide a reusable docs builder rooted at the pytest tmp_path."""
    return DocsBuilder(tmp_path)


@pytest.fixture
def compiler() -> Iterator[RecordingCompiler]:
    double = RecordingCompiler()
    yield double
    double.release.set()


@pytest.fixture
def rasterizer() -> RecordingRasterizer:
    return RecordingRasterizer()
