"""Wiring of the engine pieces for one database.

``build_components`` opens the store and assembles the provider, cache,
retriever, fact store and knowledge graph from a :class:`Config`.  Used by
both the HTTP API lifespan and the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .cache import EmbeddingCache, SQLiteEmbeddingRepository
from .config import Config, ConfigError
from .embeddings import EmbeddingProvider, create_provider
from .facts import FactStore
from .graph import KnowledgeGraph
from .search import HybridSearch
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class Components:
    storage: MemoryStorage
    provider: Optional[EmbeddingProvider]
    cache: EmbeddingCache
    search: HybridSearch
    facts: FactStore
    graph: KnowledgeGraph

    def close(self) -> None:
        self.storage.close()


def build_components(cfg: Config) -> Components:
    """Open ``cfg.db_path`` and build everything on top of it.

    A provider that cannot be configured (e.g. hosted backend without a
    key) is logged and left out; recall then runs lexical-only.
    """
    storage = MemoryStorage(db_path=cfg.db_path)
    cache = EmbeddingCache(SQLiteEmbeddingRepository(storage, encoding=cfg.embedding_storage))

    provider: Optional[EmbeddingProvider]
    try:
        provider = create_provider(cfg.provider_config())
    except ConfigError as exc:
        logger.warning("Embedding provider unavailable (%s) -- lexical-only recall", exc)
        provider = None

    search = HybridSearch(
        storage=storage,
        provider=provider,
        cache=cache,
        semantic_weight=cfg.semantic_weight,
        timeout=cfg.embedding_timeout,
        max_concurrency=cfg.embed_concurrency,
    )
    facts = FactStore(storage)
    return Components(
        storage=storage,
        provider=provider,
        cache=cache,
        search=search,
        facts=facts,
        graph=KnowledgeGraph(facts),
    )
