"""Per-item embedding cache.

Vectors are keyed by ``(item_id, model)`` so switching models never serves a
stale vector from another model.  The cache sits in front of an
:class:`EmbeddingRepository`; the SQLite repository persists into the
``embeddings`` table of :class:`~offline_memory.storage.MemoryStorage`, the
in-memory one backs tests and throwaway stores.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from .codec import decode_vector, encode_vector
from .embeddings import EmbeddingError, EmbeddingProvider
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingRecord:
    """A stored vector for one (item, model) pair."""
    item_id: str
    model: str
    dims: int
    vector: np.ndarray
    updated_at: int = 0


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class EmbeddingRepository:
    """Storage interface the cache talks to."""

    def get(self, item_id: str, model: str) -> Optional[EmbeddingRecord]:
        raise NotImplementedError

    def put(self, record: EmbeddingRecord) -> None:
        raise NotImplementedError

    def delete_item(self, item_id: str) -> int:
        raise NotImplementedError


class InMemoryEmbeddingRepository(EmbeddingRepository):
    """Dict-backed repository."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], EmbeddingRecord] = {}

    def get(self, item_id: str, model: str) -> Optional[EmbeddingRecord]:
        return self._records.get((item_id, model))

    def put(self, record: EmbeddingRecord) -> None:
        self._records[(record.item_id, record.model)] = record

    def delete_item(self, item_id: str) -> int:
        keys = [k for k in self._records if k[0] == item_id]
        for k in keys:
            del self._records[k]
        return len(keys)

    def __len__(self) -> int:
        return len(self._records)


class SQLiteEmbeddingRepository(EmbeddingRepository):
    """Repository persisting into the store's ``embeddings`` table.

    ``encoding`` selects the on-disk format for new writes (``float16``
    halves the footprint); reads honour whatever encoding a row was
    written with.
    """

    def __init__(self, storage: MemoryStorage, encoding: str = "float16") -> None:
        if encoding not in ("float16", "float32"):
            raise ValueError(f"SQLiteEmbeddingRepository: unknown encoding {encoding!r}")
        self.storage = storage
        self.encoding = encoding

    def get(self, item_id: str, model: str) -> Optional[EmbeddingRecord]:
        row = self.storage.get_embedding_row(item_id, model)
        if row is None:
            return None
        vector = decode_vector(row["vector"], int(row["dims"]), row["encoding"])
        return EmbeddingRecord(
            item_id=row["item_id"],
            model=row["model"],
            dims=int(row["dims"]),
            vector=vector,
            updated_at=int(row["updated_at"]),
        )

    def put(self, record: EmbeddingRecord) -> None:
        self.storage.put_embedding_row(
            record.item_id,
            record.model,
            record.dims,
            self.encoding,
            encode_vector(record.vector, self.encoding),
            updated_at=record.updated_at or None,
        )

    def delete_item(self, item_id: str) -> int:
        return self.storage.delete_embeddings(item_id)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class EmbeddingCache:
    """Fetch-or-compute cache for item vectors."""

    def __init__(self, repository: EmbeddingRepository) -> None:
        self.repository = repository
        self.hits = 0
        self.misses = 0

    async def get_or_fetch(
        self,
        item_id: str,
        model: str,
        text: str,
        provider: EmbeddingProvider,
        timeout: Optional[float] = None,
        expected_dims: Optional[int] = None,
    ) -> Optional[np.ndarray]:
        """Return the cached vector for (item, model), embedding it on a miss.

        A record whose dims disagree with ``expected_dims`` is treated as
        stale and re-embedded.  Provider failures are absorbed: the result
        is ``None`` and nothing is written.
        """
        record = self.repository.get(item_id, model)
        if record is not None:
            if expected_dims is None or record.dims == expected_dims:
                self.hits += 1
                logger.debug("Embedding cache hit: %s (%s)", item_id, model)
                return record.vector
            logger.warning(
                "Stale embedding for %s (%s): %d dims, expected %d; re-embedding",
                item_id, model, record.dims, expected_dims,
            )

        self.misses += 1
        try:
            emb = await provider.embed(text, model=model, timeout=timeout)
        except EmbeddingError as exc:
            logger.warning("Embedding fetch failed for %s (%s): %s", item_id, model, exc)
            return None

        self.repository.put(
            EmbeddingRecord(
                item_id=item_id,
                model=model,
                dims=emb.dims,
                vector=emb.vector,
                updated_at=int(time.time() * 1000),
            )
        )
        logger.debug("Embedding cache miss: %s (%s) stored %d dims", item_id, model, emb.dims)
        return emb.vector
