"""Shared fixtures for offline memory tests."""

from __future__ import annotations

import hashlib
from typing import Dict, List, Optional

import numpy as np
import pytest

from offline_memory.cache import EmbeddingCache, InMemoryEmbeddingRepository
from offline_memory.embeddings import Embedding, EmbeddingError
from offline_memory.facts import FactStore
from offline_memory.graph import KnowledgeGraph
from offline_memory.search import HybridSearch
from offline_memory.storage import MemoryStorage


# ---------------------------------------------------------------------------
# Ensure no real configuration or API calls leak in
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Point config at a temp DB and clear credentials from the host env."""
    monkeypatch.setenv("OFFLINE_MEMORY_DB", str(tmp_path / "env.sqlite"))
    for var in (
        "OFFLINE_MEMORY_CONFIG",
        "OFFLINE_MEMORY_PROVIDER",
        "OFFLINE_MEMORY_MODEL",
        "OFFLINE_MEMORY_API_KEY",
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_storage(tmp_path):
    """Create a fresh MemoryStorage backed by a temp SQLite file."""
    s = MemoryStorage(db_path=str(tmp_path / "test.sqlite"))
    yield s
    s.close()


@pytest.fixture
def fact_store(tmp_storage):
    return FactStore(tmp_storage)


@pytest.fixture
def knowledge_graph(fact_store):
    return KnowledgeGraph(fact_store)


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------

class FakeProvider:
    """Deterministic provider returning predictable vectors.

    Vectors come from ``overrides`` when the text is listed there, otherwise
    from a hash of the text so identical texts map to identical vectors.
    """

    name = "fake"

    def __init__(self, dimensions: int = 4, model: str = "fake-model",
                 overrides: Optional[Dict[str, List[float]]] = None):
        self.dimensions = dimensions
        self.model = model
        self.overrides = dict(overrides or {})
        self.calls: List[str] = []

    async def embed(self, text: str, model: Optional[str] = None,
                    timeout: Optional[float] = None) -> Embedding:
        self.calls.append(text)
        if text in self.overrides:
            vec = np.asarray(self.overrides[text], dtype=np.float32)
        else:
            vec = self._deterministic_vector(text)
        return Embedding(vector=vec, dims=int(vec.size), model=model or self.model)

    def _deterministic_vector(self, text: str) -> np.ndarray:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vec = np.array([b / 255.0 + 0.01 for b in digest[: self.dimensions]], dtype=np.float32)
        return vec / np.linalg.norm(vec)


class FailingProvider:
    """Provider whose every call fails like an unreachable gateway."""

    name = "failing"

    def __init__(self, model: str = "fake-model"):
        self.model = model
        self.calls = 0

    async def embed(self, text: str, model: Optional[str] = None,
                    timeout: Optional[float] = None) -> Embedding:
        self.calls += 1
        raise EmbeddingError("gateway embeddings request failed: connection refused")


@pytest.fixture
def fake_provider():
    return FakeProvider(dimensions=4)


@pytest.fixture
def failing_provider():
    return FailingProvider()


@pytest.fixture
def memory_cache():
    return EmbeddingCache(InMemoryEmbeddingRepository())


@pytest.fixture
def hybrid_search(tmp_storage, fake_provider, memory_cache):
    """HybridSearch wired to temp storage, fake provider and in-memory cache."""
    return HybridSearch(storage=tmp_storage, provider=fake_provider, cache=memory_cache)
