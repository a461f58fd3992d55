"""Shared fixtures; the capability fakes live in ``fakes``."""
from __future__ import annotations

import math
from pathlib import Path

import pytest

from ragrelay.store import ContextStore, KeyValueStore

from .fakes import PARIS, QUESTION, FakeEmbedding, FakeIndex


@pytest.fixture
def store(tmp_path: Path):
    kv = KeyValueStore(tmp_path / "store.sqlite3")
    yield ContextStore(kv)
    kv.close()


@pytest.fixture
def paris_embedding() -> FakeEmbedding:
    return FakeEmbedding({QUESTION: (1.0, 0.0), PARIS: (0.92, math.sqrt(1 - 0.92**2))})


@pytest.fixture
def paris_index() -> FakeIndex:
    return FakeIndex(scores={"d1:0": 0.92})
