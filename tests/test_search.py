"""Tests for hybrid search and the attribution filter."""

import pytest

from offline_memory.cache import EmbeddingCache, InMemoryEmbeddingRepository
from offline_memory.embeddings import EmbeddingError
from offline_memory.search import AttributionFilter, HybridSearch, filter_results

from conftest import FailingProvider, FakeProvider


class PartialProvider(FakeProvider):
    """Fails for one specific text, succeeds otherwise."""

    def __init__(self, broken: str, **kwargs):
        super().__init__(**kwargs)
        self.broken = broken

    async def embed(self, text, model=None, timeout=None):
        if text == self.broken:
            raise EmbeddingError("gateway embeddings failed: HTTP 500")
        return await super().embed(text, model=model, timeout=timeout)


def _search(storage, provider, **kwargs):
    return HybridSearch(storage=storage, provider=provider,
                        cache=EmbeddingCache(InMemoryEmbeddingRepository()), **kwargs)


class TestAttributionFilter:
    def test_empty_filter_keeps_everything(self, tmp_storage):
        tmp_storage.insert_item(text="coffee", entity_id="loic")
        hits = tmp_storage.search_text("coffee")
        assert filter_results(hits, AttributionFilter()) == hits
        assert filter_results(hits, None) == hits

    def test_exact_match_only(self, tmp_storage):
        tmp_storage.insert_item(text="coffee one", item_id="a", entity_id="loic", session_id="s1")
        tmp_storage.insert_item(text="coffee two", item_id="b", entity_id="loic", session_id="s2")
        tmp_storage.insert_item(text="coffee three", item_id="c", entity_id="lo")
        hits = tmp_storage.search_text("coffee")

        by_entity = filter_results(hits, AttributionFilter(entity_id="loic"))
        assert sorted(h.item.id for h in by_entity) == ["a", "b"]

        both = filter_results(hits, AttributionFilter(entity_id="loic", session_id="s2"))
        assert [h.item.id for h in both] == ["b"]

    def test_no_match_is_empty(self, tmp_storage):
        tmp_storage.insert_item(text="coffee", entity_id="marie")
        hits = tmp_storage.search_text("coffee")
        assert filter_results(hits, AttributionFilter(entity_id="loic")) == []


@pytest.mark.asyncio
class TestHybridSearch:
    async def test_empty_store(self, hybrid_search):
        assert await hybrid_search.search("anything") == []

    async def test_blank_query(self, tmp_storage, hybrid_search):
        tmp_storage.insert_item(text="something")
        assert await hybrid_search.search("   ") == []

    async def test_results_carry_all_scores(self, tmp_storage, hybrid_search):
        tmp_storage.insert_item(text="espresso at the cafe")
        results = await hybrid_search.search("espresso", top_k=5)
        assert len(results) == 1
        r = results[0]
        assert r.semantic_score is not None
        assert -1.0 <= r.semantic_score <= 1.0
        assert hybrid_search.last_search_mode == "hybrid"
        assert hybrid_search.last_search_degraded is False

    async def test_semantic_direction_decides_ties(self, tmp_storage):
        provider = FakeProvider(dimensions=2, overrides={
            "zzz": [1.0, 0.0],
            "alpha": [1.0, 0.0],
            "beta": [-1.0, 0.0],
        })
        tmp_storage.insert_item(text="alpha", item_id="alpha", created_at=1)
        tmp_storage.insert_item(text="beta", item_id="beta", created_at=2)

        results = await _search(tmp_storage, provider).search("zzz", semantic_weight=1.0)
        assert [r.item.id for r in results] == ["alpha", "beta"]
        assert results[0].semantic_score == pytest.approx(1.0)
        assert results[1].semantic_score == pytest.approx(-1.0)
        assert results[0].fused_score > results[1].fused_score

    async def test_lexical_only_weight(self, tmp_storage, fake_provider):
        strong = tmp_storage.insert_item(text="espresso espresso espresso")
        tmp_storage.insert_item(text="espresso once")
        tea = tmp_storage.insert_item(text="tea")

        results = await _search(tmp_storage, fake_provider).search("espresso", semantic_weight=0.0)
        assert results[0].item.id == strong.id
        assert results[0].fused_score == pytest.approx(1.0)
        assert results[-1].item.id == tea.id
        assert results[-1].fused_score == pytest.approx(0.0)

    async def test_recent_items_join_the_pool(self, tmp_storage):
        provider = FakeProvider(dimensions=2, overrides={
            "car": [1.0, 0.0],
            "automobile maintenance": [1.0, 0.0],
        })
        item = tmp_storage.insert_item(text="automobile maintenance")
        results = await _search(tmp_storage, provider).search("car")
        assert [r.item.id for r in results] == [item.id]
        assert results[0].lexical_score == 0.0
        assert results[0].semantic_score == pytest.approx(1.0)

    async def test_top_k_truncates(self, tmp_storage, hybrid_search):
        for i in range(8):
            tmp_storage.insert_item(text=f"coffee note {i}")
        assert len(await hybrid_search.search("coffee", top_k=3)) == 3

    async def test_item_vectors_are_cached(self, tmp_storage, fake_provider, hybrid_search):
        tmp_storage.insert_item(text="coffee one")
        tmp_storage.insert_item(text="coffee two")
        await hybrid_search.search("coffee")
        first = len(fake_provider.calls)
        await hybrid_search.search("coffee")
        # only the query is embedded again
        assert len(fake_provider.calls) == first + 1

    async def test_missing_candidate_vector_scores_zero(self, tmp_storage):
        provider = PartialProvider("broken item", dimensions=4)
        tmp_storage.insert_item(text="broken item", item_id="broken")
        tmp_storage.insert_item(text="fine item", item_id="fine")

        results = await _search(tmp_storage, provider).search("item")
        by_id = {r.item.id: r for r in results}
        assert set(by_id) == {"broken", "fine"}
        assert by_id["broken"].semantic_score is None
        assert by_id["fine"].semantic_score is not None

    async def test_filter_applied_after_ranking(self, tmp_storage, hybrid_search):
        tmp_storage.insert_item(text="coffee with loic", entity_id="loic")
        tmp_storage.insert_item(text="coffee alone")
        results = await hybrid_search.search("coffee", filter=AttributionFilter(entity_id="loic"))
        assert [r.item.entity_id for r in results] == ["loic"]

    async def test_filter_without_matches_is_empty(self, tmp_storage, hybrid_search):
        tmp_storage.insert_item(text="coffee alone")
        assert await hybrid_search.search("coffee", filter=AttributionFilter(entity_id="loic")) == []

    async def test_concurrent_fetch_keeps_order(self, tmp_storage):
        for i in range(12):
            tmp_storage.insert_item(text=f"coffee variant {i}", created_at=i + 1)

        sequential = await _search(tmp_storage, FakeProvider(dimensions=8)).search("coffee")
        parallel = await _search(tmp_storage, FakeProvider(dimensions=8), max_concurrency=4).search("coffee")
        assert [r.item.id for r in parallel] == [r.item.id for r in sequential]
        assert [r.fused_score for r in parallel] == [r.fused_score for r in sequential]


@pytest.mark.asyncio
class TestLexicalFallback:
    async def test_unreachable_provider(self, tmp_storage, failing_provider):
        item = tmp_storage.insert_item(text="espresso at the cafe")
        search = _search(tmp_storage, failing_provider)

        results = await search.search("espresso", top_k=5)
        assert [r.item.id for r in results] == [item.id]
        assert results[0].semantic_score is None
        assert search.last_search_mode == "lexical_only"
        assert search.last_search_degraded is True

    async def test_fused_equals_lexical_and_order_is_lexical(self, tmp_storage):
        strong = tmp_storage.insert_item(text="espresso espresso espresso")
        weak = tmp_storage.insert_item(text="espresso once")
        tea = tmp_storage.insert_item(text="tea")

        results = await _search(tmp_storage, FailingProvider()).search("espresso")
        assert [r.item.id for r in results] == [strong.id, weak.id, tea.id]
        for r in results:
            assert r.semantic_score is None
            assert r.fused_score == r.lexical_score

    async def test_no_provider_configured(self, tmp_storage):
        tmp_storage.insert_item(text="espresso")
        search = _search(tmp_storage, None)
        results = await search.search("espresso")
        assert len(results) == 1
        assert search.last_search_mode == "lexical_only"

    async def test_item_embeddings_not_attempted(self, tmp_storage):
        provider = FailingProvider()
        tmp_storage.insert_item(text="one")
        tmp_storage.insert_item(text="two")
        await _search(tmp_storage, provider).search("one")
        assert provider.calls == 1
