"""Hybrid search: FTS5 BM25 blended with embedding cosine similarity.

Candidate pool:
    top lexical hits  ∪  most recent items (lexical score 0)

Each candidate is scored as::

    fused = (1 - w) * lex_norm + w * sem_norm

where ``lex_norm`` is the min/max normalised lexical score over the pool and
``sem_norm = (cos + 1) / 2``.  When the query itself cannot be embedded the
search degrades to lexical-only ranking instead of failing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from .cache import EmbeddingCache
from .codec import DimensionMismatch, cosine_similarity
from .embeddings import EmbeddingError, EmbeddingProvider
from .storage import LexicalResult, MemoryItem, MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_POOL = 50


@dataclass
class HybridResult:
    """A ranked item with its per-layer scores."""
    item: MemoryItem
    lexical_score: float
    semantic_score: Optional[float]
    fused_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "lexical_score": round(self.lexical_score, 6),
            "semantic_score": None if self.semantic_score is None else round(self.semantic_score, 6),
            "fused_score": round(self.fused_score, 6),
        }


@dataclass
class AttributionFilter:
    """Exact-match constraints on attribution fields; None means unconstrained."""
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None

    def is_empty(self) -> bool:
        return self.entity_id is None and self.process_id is None and self.session_id is None

    def matches(self, item: MemoryItem) -> bool:
        if self.entity_id is not None and item.entity_id != self.entity_id:
            return False
        if self.process_id is not None and item.process_id != self.process_id:
            return False
        if self.session_id is not None and item.session_id != self.session_id:
            return False
        return True


def filter_results(results: List[Any], flt: Optional[AttributionFilter]) -> List[Any]:
    """Keep results whose item satisfies every supplied attribution field.

    Works on anything with an ``item`` attribute (lexical or hybrid results).
    """
    if flt is None or flt.is_empty():
        return list(results)
    return [r for r in results if flt.matches(r.item)]


def _merge_candidates(lexical: List[LexicalResult], recent: List[MemoryItem]) -> List[LexicalResult]:
    """Union of lexical hits and recent items, first occurrence wins."""
    merged: List[LexicalResult] = []
    seen: set[str] = set()
    for r in lexical + [LexicalResult(item=it, lexical_score=0.0) for it in recent]:
        if r.item.id in seen:
            continue
        seen.add(r.item.id)
        merged.append(r)
    return merged


class HybridSearch:
    """Lexical + semantic retriever over a :class:`MemoryStorage`."""

    def __init__(
        self,
        storage: MemoryStorage,
        provider: Optional[EmbeddingProvider],
        cache: EmbeddingCache,
        semantic_weight: float = 0.7,
        timeout: float = 3.0,
        max_concurrency: int = 1,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.cache = cache
        self.semantic_weight = max(0.0, min(1.0, float(semantic_weight)))
        self.timeout = timeout
        self.max_concurrency = max(1, int(max_concurrency))
        # Graceful degradation: track whether the last search used embeddings
        self.last_search_degraded: bool = False
        self.last_search_mode: str = "hybrid"  # hybrid | lexical_only

    async def search(
        self,
        query: str,
        top_k: int = 10,
        candidates: Optional[int] = None,
        semantic_weight: Optional[float] = None,
        filter: Optional[AttributionFilter] = None,
    ) -> List[HybridResult]:
        """Rank items for ``query``. Never raises on provider failure.

        ``filter`` is applied after truncation, so fewer than ``top_k``
        results may come back even when more matching items exist.
        """
        self.last_search_degraded = False
        self.last_search_mode = "hybrid"

        if not query or not query.strip() or top_k <= 0:
            return []

        pool = candidates if candidates is not None else max(DEFAULT_CANDIDATE_POOL, top_k)
        w = self.semantic_weight if semantic_weight is None else max(0.0, min(1.0, float(semantic_weight)))
        t0 = time.monotonic()

        # Candidate generation ------------------------------------------------
        lex_hits = self.storage.search_text(query, pool)
        recent = self.storage.recent_items(pool)
        cands = _merge_candidates(lex_hits, recent)
        if not cands:
            return []

        # Query vector ------------------------------------------------------------
        query_vec = await self._embed_query(query)
        if query_vec is None:
            self.last_search_degraded = True
            self.last_search_mode = "lexical_only"
            ranked = sorted(cands, key=lambda r: r.lexical_score, reverse=True)
            results = [
                HybridResult(item=r.item, lexical_score=r.lexical_score,
                             semantic_score=None, fused_score=r.lexical_score)
                for r in ranked[:top_k]
            ]
            return filter_results(results, filter)

        # Per-candidate semantic scores ------------------------------------------
        sems = await self._semantic_scores(cands, query_vec)

        # Normalise + fuse ----------------------------------------------------
        lex_scores = [r.lexical_score for r in cands]
        min_lex = min(lex_scores)
        max_lex = max(lex_scores)
        denom = (max_lex - min_lex) or 1.0

        out: List[HybridResult] = []
        for r, sem in zip(cands, sems):
            lex_norm = (r.lexical_score - min_lex) / denom
            sem_norm = 0.0 if sem is None else (sem + 1.0) / 2.0
            fused = (1.0 - w) * lex_norm + w * sem_norm
            out.append(HybridResult(item=r.item, lexical_score=r.lexical_score,
                                    semantic_score=sem, fused_score=fused))

        # sorted() is stable: ties keep candidate order
        out.sort(key=lambda r: r.fused_score, reverse=True)
        logger.debug(
            "Hybrid search %r: %d candidates, %.1fms",
            query, len(cands), (time.monotonic() - t0) * 1000,
        )
        return filter_results(out[:top_k], filter)

    async def _embed_query(self, query: str) -> Optional[np.ndarray]:
        if self.provider is None:
            logger.warning("No embedding provider configured (lexical fallback)")
            return None
        try:
            emb = await self.provider.embed(query, timeout=self.timeout)
        except EmbeddingError as exc:
            logger.warning("Query embedding failed (lexical fallback): %s", exc)
            return None
        return emb.vector

    async def _semantic_scores(
        self, cands: List[LexicalResult], query_vec: np.ndarray
    ) -> List[Optional[float]]:
        """Cosine per candidate, in candidate order."""
        dims = int(query_vec.size)
        model = self.provider.model

        async def _one(r: LexicalResult) -> Optional[float]:
            vec = await self.cache.get_or_fetch(
                r.item.id, model, r.item.text, self.provider,
                timeout=self.timeout, expected_dims=dims,
            )
            if vec is None:
                return None
            try:
                return cosine_similarity(query_vec, vec)
            except DimensionMismatch as exc:
                logger.warning("Skipping semantic score for %s: %s", r.item.id, exc)
                return None

        if self.max_concurrency == 1:
            return [await _one(r) for r in cands]

        sem = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(r: LexicalResult) -> Optional[float]:
            async with sem:
                return await _one(r)

        # gather preserves argument order
        return list(await asyncio.gather(*(_bounded(r) for r in cands)))
