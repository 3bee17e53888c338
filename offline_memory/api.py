"""FastAPI HTTP API for the offline memory store.

Endpoints:
    GET    /v1/health                -- Health check (storage + embedding probe)
    GET    /v1/stats                 -- Store statistics
    POST   /v1/store                 -- Store one memory item
    POST   /v1/recall                -- Hybrid (or lexical) search with attribution filter
    GET    /v1/items/{id}            -- Fetch one item
    DELETE /v1/items/{id}            -- Delete an item (and facts sourced from it)
    GET    /v1/items/by-entity       -- Items attributed to an entity (newest first)
    GET    /v1/items/by-session      -- Items of a session (oldest first)
    GET    /v1/items/by-process      -- Items captured by a process (newest first)
    GET    /v1/entities              -- Distinct entity ids
    GET    /v1/sessions              -- Distinct session ids
    POST   /v1/facts                 -- Add a fact
    GET    /v1/facts                 -- List facts (optional entity filter)
    GET    /v1/facts/search          -- Substring search over facts
    GET    /v1/facts/subjects        -- Distinct subjects
    GET    /v1/facts/predicates      -- Distinct predicates
    GET    /v1/facts/by-subject      -- Facts about one subject
    DELETE /v1/facts/{id}            -- Delete a fact
    GET    /v1/graph/stats           -- Knowledge graph statistics
    GET    /v1/graph/entity          -- Facts touching an entity
    GET    /v1/graph/related         -- Directly connected entities
    GET    /v1/graph/path            -- Paths between two entities
    GET    /v1/graph/export          -- Nodes/edges JSON for visualisation

Run: ``python -m offline_memory.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .components import build_components
from .config import Config, load_config
from .embeddings import EmbeddingError, EmbeddingProvider
from .facts import FactStore, FactValidationError
from .graph import KnowledgeGraph
from .middleware import AccessLogMiddleware, APIKeyMiddleware
from .search import AttributionFilter, HybridSearch, filter_results
from .storage import ItemValidationError, MemoryStorage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_config: Optional[Config] = None
_storage: Optional[MemoryStorage] = None
_provider: Optional[EmbeddingProvider] = None
_search: Optional[HybridSearch] = None
_facts: Optional[FactStore] = None
_graph: Optional[KnowledgeGraph] = None
_start_time: float = 0.0


def _get_storage() -> MemoryStorage:
    if _storage is None:
        raise HTTPException(503, "Storage not initialised")
    return _storage


def _get_search() -> HybridSearch:
    if _search is None:
        raise HTTPException(503, "Search not initialised")
    return _search


def _get_facts() -> FactStore:
    if _facts is None:
        raise HTTPException(503, "Fact store not initialised")
    return _facts


def _get_graph() -> KnowledgeGraph:
    if _graph is None:
        raise HTTPException(503, "Knowledge graph not initialised")
    return _graph


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _config, _storage, _provider, _search, _facts, _graph, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    parts = build_components(_config)
    _storage = parts.storage
    _provider = parts.provider
    _search = parts.search
    _facts = parts.facts
    _graph = parts.graph
    _start_time = time.time()

    logger.info(
        "Memory API ready -- db=%s provider=%s model=%s storage=%s",
        _config.db_path,
        _provider.name if _provider else "none",
        _provider.model if _provider else "-",
        _config.embedding_storage,
    )

    yield

    _storage.close()
    _storage = _provider = _search = _facts = _graph = None


app = FastAPI(
    title="Offline Memory API",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Middleware (order matters: last added = first to run) ---
app.add_middleware(AccessLogMiddleware)

# Key comes from OFFLINE_MEMORY_API_KEY or the JSON config file
_api_key = load_config().api_key
if _api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No API key configured -- API is UNAUTHENTICATED")

# CORS: restrict to localhost origins only
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# --- Centralized error handling ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )

@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StoreRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=100000)
    id: Optional[str] = None
    title: Optional[str] = None
    tags: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[str] = None
    meta: Optional[Any] = Field(default=None, description="JSON object/array, or JSON text")
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None


class RecallRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    limit: int = Field(default=10, ge=1, le=100)
    mode: Literal["hybrid", "lexical"] = "hybrid"
    candidates: Optional[int] = Field(default=None, ge=1, le=1000)
    semantic_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None


class FactRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    predicate: str = Field(..., min_length=1)
    object: str
    confidence: float = 0.7
    source_item_id: Optional[str] = None
    entity_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Health / stats
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Returns 200 with status "ok" | "degraded" | "down"."""
    checks: Dict[str, bool] = {"storage": False, "embedding": False}

    if _storage is not None:
        try:
            _storage.stats()
            checks["storage"] = True
        except Exception as exc:
            logger.warning("Health storage probe failed: %s", exc)

    if _provider is not None:
        try:
            await _provider.embed("health_probe", timeout=5.0)
            checks["embedding"] = True
        except EmbeddingError as exc:
            logger.warning("Health embedding probe failed: %s", exc)

    overall = "ok" if all(checks.values()) else ("degraded" if checks["storage"] else "down")
    return {
        "status": overall,
        "checks": checks,
        "uptime_seconds": round(time.time() - _start_time, 1),
    }


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    return _get_storage().stats()


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------

@app.post("/v1/store")
async def store(req: StoreRequest) -> Dict[str, Any]:
    """Store a single memory item."""
    storage = _get_storage()
    try:
        item = storage.insert_item(
            text=req.text,
            item_id=req.id,
            title=req.title,
            tags=req.tags,
            source=req.source,
            source_id=req.source_id,
            meta=req.meta,
            entity_id=req.entity_id,
            process_id=req.process_id,
            session_id=req.session_id,
        )
    except ItemValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"id": item.id, "stored": True, "item": item.to_dict()}


@app.post("/v1/recall")
async def recall(req: RecallRequest) -> Dict[str, Any]:
    """Search memories; hybrid by default, falling back to lexical when embeddings fail."""
    flt = AttributionFilter(
        entity_id=req.entity_id,
        process_id=req.process_id,
        session_id=req.session_id,
    )

    if req.mode == "lexical":
        hits = _get_storage().search_text(req.query, req.limit)
        hits = filter_results(hits, flt)
        return {
            "query": req.query,
            "search_mode": "lexical",
            "count": len(hits),
            "results": [
                {"item": h.item.to_dict(), "lexical_score": round(h.lexical_score, 6)}
                for h in hits
            ],
        }

    search = _get_search()
    results = await search.search(
        query=req.query,
        top_k=req.limit,
        candidates=req.candidates or (_config.candidate_pool if _config else None),
        semantic_weight=req.semantic_weight,
        filter=flt,
    )
    response: Dict[str, Any] = {
        "query": req.query,
        "search_mode": search.last_search_mode,
        "count": len(results),
        "results": [r.to_dict() for r in results],
    }
    if search.last_search_degraded:
        response["degraded"] = True
    return response


def _items_response(key: str, value: str, items: List[Any]) -> Dict[str, Any]:
    return {key: value, "count": len(items), "items": [i.to_dict() for i in items]}


@app.get("/v1/items/by-entity")
async def items_by_entity(
    entity_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=1000),
) -> Dict[str, Any]:
    return _items_response("entity_id", entity_id, _get_storage().items_by_entity(entity_id, limit))


@app.get("/v1/items/by-session")
async def items_by_session(
    session_id: str = Query(..., min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> Dict[str, Any]:
    return _items_response("session_id", session_id, _get_storage().items_by_session(session_id, limit))


@app.get("/v1/items/by-process")
async def items_by_process(
    process_id: str = Query(..., min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> Dict[str, Any]:
    return _items_response("process_id", process_id, _get_storage().items_by_process(process_id, limit))


@app.get("/v1/items/{item_id}")
async def get_item(item_id: str) -> Dict[str, Any]:
    item = _get_storage().get_item(item_id)
    if item is None:
        raise HTTPException(404, f"get_item: no item {item_id!r}")
    return item.to_dict()


@app.delete("/v1/items/{item_id}")
async def delete_item(item_id: str, cascade_facts: bool = Query(default=True)) -> Dict[str, Any]:
    res = _get_facts().forget_item(item_id, cascade_facts=cascade_facts)
    if not res["deleted"]:
        raise HTTPException(404, f"delete_item: no item {item_id!r}")
    return {"id": item_id, **res}


@app.get("/v1/entities")
async def list_entities() -> Dict[str, Any]:
    entities = _get_storage().list_entities()
    return {"count": len(entities), "entities": entities}


@app.get("/v1/sessions")
async def list_sessions() -> Dict[str, Any]:
    sessions = _get_storage().list_sessions()
    return {"count": len(sessions), "sessions": sessions}


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

@app.post("/v1/facts")
async def add_fact(req: FactRequest) -> Dict[str, Any]:
    try:
        fact = _get_facts().insert_fact(
            subject=req.subject,
            predicate=req.predicate,
            object=req.object,
            confidence=req.confidence,
            source_item_id=req.source_item_id,
            entity_id=req.entity_id,
        )
    except FactValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"id": fact.id, "fact": fact.to_dict()}


@app.get("/v1/facts")
async def list_facts(
    entity_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=10000),
) -> Dict[str, Any]:
    facts = _get_facts().all_facts(entity_id=entity_id, limit=limit)
    return {"count": len(facts), "facts": [f.to_dict() for f in facts]}


@app.get("/v1/facts/search")
async def search_facts(
    query: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=1000),
) -> Dict[str, Any]:
    facts = _get_facts().search(query, limit)
    return {"query": query, "count": len(facts), "facts": [f.to_dict() for f in facts]}


@app.get("/v1/facts/subjects")
async def list_subjects() -> Dict[str, Any]:
    subjects = _get_facts().list_subjects()
    return {"count": len(subjects), "subjects": subjects}


@app.get("/v1/facts/predicates")
async def list_predicates() -> Dict[str, Any]:
    predicates = _get_facts().list_predicates()
    return {"count": len(predicates), "predicates": predicates}


@app.get("/v1/facts/by-subject")
async def facts_by_subject(
    subject: str = Query(..., min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> Dict[str, Any]:
    facts = _get_facts().facts_by_subject(subject, limit)
    return {"subject": subject, "count": len(facts), "facts": [f.to_dict() for f in facts]}


@app.delete("/v1/facts/{fact_id}")
async def delete_fact(fact_id: str) -> Dict[str, Any]:
    if not _get_facts().delete_fact(fact_id):
        raise HTTPException(404, f"delete_fact: no fact {fact_id!r}")
    return {"id": fact_id, "deleted": True}


# ---------------------------------------------------------------------------
# Knowledge graph
# ---------------------------------------------------------------------------

@app.get("/v1/graph/stats")
async def graph_stats() -> Dict[str, Any]:
    return _get_graph().stats()


@app.get("/v1/graph/entity")
async def graph_entity(entity: str = Query(..., min_length=1)) -> Dict[str, Any]:
    edges = _get_graph().entity_edges(entity)
    return {"entity": entity, "count": len(edges), "edges": [f.to_dict() for f in edges]}


@app.get("/v1/graph/related")
async def graph_related(entity: str = Query(..., min_length=1)) -> Dict[str, Any]:
    related = _get_graph().neighbors(entity)
    return {"entity": entity, "count": len(related), "related": related}


@app.get("/v1/graph/path")
async def graph_path(
    from_entity: str = Query(..., alias="from", min_length=1),
    to_entity: str = Query(..., alias="to", min_length=1),
    max_depth: int = Query(default=4, ge=1, le=10),
    max_paths: int = Query(default=5, ge=1, le=100),
) -> Dict[str, Any]:
    paths = _get_graph().find_paths(from_entity, to_entity, max_depth, max_paths)
    return {
        "from": from_entity,
        "to": to_entity,
        "count": len(paths),
        "paths": [p.to_dict() for p in paths],
    }


@app.get("/v1/graph/export")
async def graph_export(
    entity: Optional[str] = Query(default=None),
    min_confidence: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    limit: int = Query(default=1000, ge=1, le=100000),
) -> Dict[str, Any]:
    graph = _get_graph().export_graph(entity=entity, min_confidence=min_confidence, limit=limit)
    return {"nodes": len(graph["nodes"]), "edges": len(graph["edges"]), "graph": graph}


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Offline Memory API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "offline_memory.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
