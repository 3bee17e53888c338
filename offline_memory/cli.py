"""Command-line front end.

Usage:
    offline-memory init
    offline-memory add "text to remember" [--title T] [--tags T] [--meta JSON]
    offline-memory search "query" [--limit N] [--hybrid] [--entity-id E]
    offline-memory entities | sessions
    offline-memory fact-add SUBJECT PREDICATE OBJECT [--confidence C]
    offline-memory facts [--subject S | --query Q | --entity-id E]
    offline-memory graph-stats
    offline-memory graph-path FROM TO [--max-depth N] [--max-paths N]
    offline-memory serve [--host H] [--port P]

Every command prints JSON on stdout.  Input errors exit with status 2.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, List, Optional

from .components import build_components
from .config import Config, ConfigError, load_config
from .facts import FactStore, FactValidationError
from .graph import KnowledgeGraph
from .search import AttributionFilter, filter_results
from .storage import ItemValidationError, MemoryStorage

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INPUT_ERROR = 2


def _emit(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _fail(message: str) -> int:
    _emit({"ok": False, "error": message})
    return EXIT_INPUT_ERROR


def _filter_from(args: argparse.Namespace) -> AttributionFilter:
    return AttributionFilter(
        entity_id=args.entity_id,
        process_id=args.process_id,
        session_id=args.session_id,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_init(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    storage.close()
    _emit({"ok": True, "db": cfg.db_path})
    return EXIT_OK


def cmd_add(cfg: Config, args: argparse.Namespace) -> int:
    meta: Any = None
    if args.meta is not None:
        try:
            meta = json.loads(args.meta)
        except ValueError as exc:
            return _fail(f"--meta must be valid JSON: {exc}")

    storage = MemoryStorage(cfg.db_path)
    try:
        item = storage.insert_item(
            text=" ".join(args.text),
            item_id=args.id,
            title=args.title,
            tags=args.tags,
            source=args.source,
            source_id=args.source_id,
            meta=meta,
            entity_id=args.entity_id,
            process_id=args.process_id,
            session_id=args.session_id,
        )
    except ItemValidationError as exc:
        return _fail(str(exc))
    finally:
        storage.close()

    _emit({"ok": True, "id": item.id})
    return EXIT_OK


def cmd_search(cfg: Config, args: argparse.Namespace) -> int:
    query = " ".join(args.query)
    flt = _filter_from(args)

    if args.hybrid:
        if args.semantic_weight is not None and not 0.0 <= args.semantic_weight <= 1.0:
            return _fail("--semantic-weight must be within [0, 1]")
        if args.candidates is not None and args.candidates < 1:
            return _fail("--candidates must be >= 1")
        try:
            cfg.provider_config()
        except ConfigError as exc:
            return _fail(str(exc))
        parts = build_components(cfg)
        search = parts.search
        try:
            results = asyncio.run(
                search.search(
                    query,
                    top_k=args.limit,
                    candidates=args.candidates if args.candidates is not None else cfg.candidate_pool,
                    semantic_weight=args.semantic_weight,
                    filter=flt,
                )
            )
        finally:
            parts.close()
        _emit({
            "ok": True,
            "mode": search.last_search_mode,
            "results": [r.to_dict() for r in results],
        })
        return EXIT_OK

    storage = MemoryStorage(cfg.db_path)
    try:
        hits = filter_results(storage.search_text(query, args.limit), flt)
    finally:
        storage.close()
    _emit({
        "ok": True,
        "mode": "lexical",
        "results": [{"item": h.item.to_dict(), "lexical_score": h.lexical_score} for h in hits],
    })
    return EXIT_OK


def cmd_entities(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        _emit({"ok": True, "entities": storage.list_entities()})
    finally:
        storage.close()
    return EXIT_OK


def cmd_sessions(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        _emit({"ok": True, "sessions": storage.list_sessions()})
    finally:
        storage.close()
    return EXIT_OK


def cmd_fact_add(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        fact = FactStore(storage).insert_fact(
            args.subject,
            args.predicate,
            args.object,
            confidence=args.confidence,
            source_item_id=args.source_item_id,
            entity_id=args.entity_id,
        )
    except FactValidationError as exc:
        return _fail(str(exc))
    finally:
        storage.close()
    _emit({"ok": True, "id": fact.id, "confidence": fact.confidence})
    return EXIT_OK


def cmd_facts(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        store = FactStore(storage)
        if args.subject:
            facts = store.facts_by_subject(args.subject, args.limit)
        elif args.query:
            facts = store.search(args.query, args.limit)
        else:
            facts = store.all_facts(entity_id=args.entity_id, limit=args.limit)
        _emit({"ok": True, "facts": [f.to_dict() for f in facts]})
    finally:
        storage.close()
    return EXIT_OK


def cmd_graph_stats(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        _emit({"ok": True, "stats": KnowledgeGraph(FactStore(storage)).stats()})
    finally:
        storage.close()
    return EXIT_OK


def cmd_graph_path(cfg: Config, args: argparse.Namespace) -> int:
    storage = MemoryStorage(cfg.db_path)
    try:
        paths = KnowledgeGraph(FactStore(storage)).find_paths(
            args.from_entity, args.to_entity, args.max_depth, args.max_paths
        )
        _emit({"ok": True, "paths": [p.to_dict() for p in paths]})
    finally:
        storage.close()
    return EXIT_OK


def cmd_serve(cfg: Config, args: argparse.Namespace) -> int:
    import uvicorn

    # The API builds its own Config in lifespan; point it at the same store.
    os.environ["OFFLINE_MEMORY_DB"] = cfg.db_path
    if args.config:
        os.environ["OFFLINE_MEMORY_CONFIG"] = args.config
    if cfg.api_key:
        os.environ["OFFLINE_MEMORY_API_KEY"] = cfg.api_key
    host = args.host or cfg.api_host
    port = args.port or cfg.api_port
    logger.info("Starting Offline Memory API on %s:%d", host, port)
    uvicorn.run("offline_memory.api:app", host=host, port=port, log_level="info")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_attribution_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--entity-id", help="Entity the memory is about / filter by entity")
    p.add_argument("--process-id", help="Process or agent that captured the memory")
    p.add_argument("--session-id", help="Conversation/session identifier")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="offline-memory", description="Offline memory store")
    parser.add_argument("--db", help="Override database path")
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create the database and schema")
    p.set_defaults(func=cmd_init)

    for name in ("add", "remember"):
        p = sub.add_parser(name, help="Store a memory item")
        p.add_argument("text", nargs="+")
        p.add_argument("--id", help="Explicit item id (default: random)")
        p.add_argument("--title")
        p.add_argument("--tags")
        p.add_argument("--source")
        p.add_argument("--source-id")
        p.add_argument("--meta", help="JSON metadata")
        _add_attribution_args(p)
        p.set_defaults(func=cmd_add)

    p = sub.add_parser("search", help="Search memories (lexical unless --hybrid)")
    p.add_argument("query", nargs="+")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--hybrid", action="store_true", help="Blend in embedding similarity")
    p.add_argument("--candidates", type=int, default=None, help="Candidate pool size")
    p.add_argument("--semantic-weight", type=float, default=None)
    _add_attribution_args(p)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("entities", help="List distinct entity ids")
    p.set_defaults(func=cmd_entities)

    p = sub.add_parser("sessions", help="List distinct session ids")
    p.set_defaults(func=cmd_sessions)

    p = sub.add_parser("fact-add", help="Add a (subject, predicate, object) fact")
    p.add_argument("subject")
    p.add_argument("predicate")
    p.add_argument("object")
    p.add_argument("--confidence", type=float, default=0.7)
    p.add_argument("--source-item-id")
    p.add_argument("--entity-id")
    p.set_defaults(func=cmd_fact_add)

    p = sub.add_parser("facts", help="List or search facts")
    p.add_argument("--subject")
    p.add_argument("--query")
    p.add_argument("--entity-id")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_facts)

    p = sub.add_parser("graph-stats", help="Knowledge graph statistics")
    p.set_defaults(func=cmd_graph_stats)

    p = sub.add_parser("graph-path", help="Paths between two entities")
    p.add_argument("from_entity", metavar="FROM")
    p.add_argument("to_entity", metavar="TO")
    p.add_argument("--max-depth", type=int, default=4)
    p.add_argument("--max-paths", type=int, default=5)
    p.set_defaults(func=cmd_graph_path)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else (logging.INFO if args.command == "serve" else logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    cfg = load_config(args.config)
    if args.db:
        cfg.db_path = args.db

    return args.func(cfg, args)


if __name__ == "__main__":
    sys.exit(main())
