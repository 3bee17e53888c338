"""Tests for the per-item embedding cache and its repositories."""

import numpy as np
import pytest

from offline_memory.cache import (
    EmbeddingCache,
    EmbeddingRecord,
    InMemoryEmbeddingRepository,
    SQLiteEmbeddingRepository,
)

from conftest import FailingProvider, FakeProvider


class TestRepositories:
    def test_in_memory_keyed_by_item_and_model(self):
        repo = InMemoryEmbeddingRepository()
        repo.put(EmbeddingRecord("a", "m1", 2, np.array([1.0, 0.0], dtype=np.float32)))
        repo.put(EmbeddingRecord("a", "m2", 3, np.array([1.0, 0.0, 0.0], dtype=np.float32)))
        assert repo.get("a", "m1").dims == 2
        assert repo.get("a", "m2").dims == 3
        assert repo.get("b", "m1") is None
        assert repo.delete_item("a") == 2
        assert len(repo) == 0

    def test_sqlite_float16_roundtrip(self, tmp_storage):
        item = tmp_storage.insert_item(text="vec")
        repo = SQLiteEmbeddingRepository(tmp_storage, encoding="float16")
        repo.put(EmbeddingRecord(item.id, "m", 3, np.array([0.5, -0.25, 1.0], dtype=np.float32)))
        rec = repo.get(item.id, "m")
        assert rec.dims == 3
        np.testing.assert_array_equal(rec.vector, [0.5, -0.25, 1.0])
        assert len(tmp_storage.get_embedding_row(item.id, "m")["vector"]) == 6

    def test_sqlite_reads_rows_of_either_encoding(self, tmp_storage):
        item = tmp_storage.insert_item(text="vec")
        SQLiteEmbeddingRepository(tmp_storage, encoding="float32").put(
            EmbeddingRecord(item.id, "m", 2, np.array([0.1, 0.2], dtype=np.float32))
        )
        rec = SQLiteEmbeddingRepository(tmp_storage, encoding="float16").get(item.id, "m")
        np.testing.assert_allclose(rec.vector, [0.1, 0.2], rtol=1e-6)

    def test_sqlite_unknown_encoding(self, tmp_storage):
        with pytest.raises(ValueError):
            SQLiteEmbeddingRepository(tmp_storage, encoding="int8")


@pytest.mark.asyncio
class TestEmbeddingCache:
    async def test_miss_then_hit(self):
        provider = FakeProvider(dimensions=4)
        cache = EmbeddingCache(InMemoryEmbeddingRepository())

        v1 = await cache.get_or_fetch("a", "fake-model", "some text", provider)
        v2 = await cache.get_or_fetch("a", "fake-model", "some text", provider)
        assert provider.calls == ["some text"]
        np.testing.assert_array_equal(v1, v2)
        assert (cache.hits, cache.misses) == (1, 1)

    async def test_models_do_not_share_vectors(self):
        provider = FakeProvider(dimensions=4)
        cache = EmbeddingCache(InMemoryEmbeddingRepository())
        await cache.get_or_fetch("a", "m1", "text", provider)
        await cache.get_or_fetch("a", "m2", "text", provider)
        assert len(provider.calls) == 2

    async def test_failure_returns_none_and_stores_nothing(self):
        repo = InMemoryEmbeddingRepository()
        cache = EmbeddingCache(repo)
        assert await cache.get_or_fetch("a", "m", "text", FailingProvider()) is None
        assert len(repo) == 0

    async def test_stale_dims_refetched(self):
        repo = InMemoryEmbeddingRepository()
        repo.put(EmbeddingRecord("a", "fake-model", 2, np.array([1.0, 0.0], dtype=np.float32)))
        provider = FakeProvider(dimensions=4)
        cache = EmbeddingCache(repo)

        vec = await cache.get_or_fetch("a", "fake-model", "text", provider, expected_dims=4)
        assert vec.size == 4
        assert repo.get("a", "fake-model").dims == 4
        assert provider.calls == ["text"]

    async def test_persisted_in_sqlite(self, tmp_storage):
        item = tmp_storage.insert_item(text="persist me")
        provider = FakeProvider(dimensions=4)
        cache = EmbeddingCache(SQLiteEmbeddingRepository(tmp_storage))
        await cache.get_or_fetch(item.id, "fake-model", item.text, provider)

        fresh = EmbeddingCache(SQLiteEmbeddingRepository(tmp_storage))
        vec = await fresh.get_or_fetch(item.id, "fake-model", item.text, provider)
        assert vec.size == 4
        assert len(provider.calls) == 1
        assert tmp_storage.get_embedding_row(item.id, "fake-model")["encoding"] == "float16"
