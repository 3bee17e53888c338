"""SQLite storage layer.

Single-file database with:
* ``items`` table holding memory items and their attribution fields
* FTS5 external-content index (``items_fts``) kept in sync by triggers
* ``embeddings`` table keyed by (item id, model name)
* ``facts`` table holding subject/predicate/object triples
* Auto-create schema on first use, idempotent migrations for older stores

One connection per store; the engine performs no locking of its own and
relies on SQLite's transactional guarantees.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ItemValidationError(ValueError):
    """Raised when an item is rejected at insertion time."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Memory items
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    source TEXT,
    source_id TEXT,
    title TEXT,
    text TEXT NOT NULL,
    tags TEXT,
    meta TEXT,
    -- Attribution & session
    entity_id TEXT,
    process_id TEXT,
    session_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);

-- Full-text index over items (external content, unicode61 tokenizer)
CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    title,
    text,
    tags,
    content='items',
    content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS items_ai AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, title, text, tags)
    VALUES (new.rowid, new.title, new.text, new.tags);
END;

CREATE TRIGGER IF NOT EXISTS items_ad AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, text, tags)
    VALUES ('delete', old.rowid, old.title, old.text, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS items_au AFTER UPDATE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, text, tags)
    VALUES ('delete', old.rowid, old.title, old.text, old.tags);
    INSERT INTO items_fts(rowid, title, text, tags)
    VALUES (new.rowid, new.title, new.text, new.tags);
END;

-- Per-item, per-model embedding vectors
CREATE TABLE IF NOT EXISTS embeddings (
    item_id TEXT NOT NULL REFERENCES items(id),
    model TEXT NOT NULL,
    dims INTEGER NOT NULL,
    encoding TEXT NOT NULL DEFAULT 'float32',
    vector BLOB NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (item_id, model)
);

-- Knowledge facts (subject, predicate, object)
CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    subject TEXT NOT NULL,
    predicate TEXT NOT NULL,
    object TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.7,
    source_item_id TEXT,
    entity_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_facts_subject ON facts(subject);
CREATE INDEX IF NOT EXISTS idx_facts_object ON facts(object);
CREATE INDEX IF NOT EXISTS idx_facts_predicate ON facts(predicate);
CREATE INDEX IF NOT EXISTS idx_facts_source_item ON facts(source_item_id)
"""

_ITEM_COLUMNS = (
    "id, created_at, source, source_id, title, text, tags, meta, "
    "entity_id, process_id, session_id"
)

_ATTRIBUTION_COLUMNS = ("entity_id", "process_id", "session_id")

_SIMPLE_QUERY_RE = re.compile(r"^\w+(?:\s+\w+)*$", re.UNICODE)


def _now_ms() -> int:
    return int(time.time() * 1000)


def escape_fts5_query(query: str) -> str:
    """Minimal escaping for FTS5 MATCH expressions.

    - Blank input becomes the empty phrase ``""``.
    - Whitespace-separated word tokens are passed through unchanged.
    - Anything else is wrapped as one phrase with inner quotes doubled.
    """
    q = query.strip()
    if not q:
        return '""'
    if _SIMPLE_QUERY_RE.match(q):
        return q
    return '"' + q.replace('"', '""') + '"'


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class MemoryItem:
    """One stored memory."""
    id: str
    created_at: int
    text: str
    title: Optional[str] = None
    tags: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[str] = None
    meta: Optional[str] = None
    entity_id: Optional[str] = None
    process_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MemoryItem":
        return cls(
            id=row["id"],
            created_at=int(row["created_at"]),
            text=row["text"],
            title=row["title"],
            tags=row["tags"],
            source=row["source"],
            source_id=row["source_id"],
            meta=row["meta"],
            entity_id=row["entity_id"],
            process_id=row["process_id"],
            session_id=row["session_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LexicalResult:
    """A full-text hit; ``lexical_score`` is higher-is-better (negated bm25)."""
    item: MemoryItem
    lexical_score: float


def _normalize_meta(meta: Any) -> Optional[str]:
    """Validate metadata and return its JSON text (or None)."""
    if meta is None:
        return None
    if isinstance(meta, str):
        try:
            json.loads(meta)
        except ValueError as exc:
            raise ItemValidationError(f"insert_item: meta is not valid JSON ({exc})") from exc
        return meta
    try:
        return json.dumps(meta)
    except (TypeError, ValueError) as exc:
        raise ItemValidationError(f"insert_item: meta is not JSON-serializable ({exc})") from exc


class MemoryStorage:
    """SQLite-backed store for items, embeddings and facts."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        from .config import load_config

        self.db_path = db_path or load_config().db_path

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()
        self.run_migrations()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def connection(self) -> sqlite3.Connection:
        """Shared connection for collaborators (fact store, repositories)."""
        return self._get_conn()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA_SQL)
        conn.commit()

    def run_migrations(self) -> None:
        """Bring stores created by older releases up to the current layout.

        Safe to call on every startup; only missing pieces are added.
        """
        conn = self._get_conn()

        existing = {row["name"] for row in conn.execute("PRAGMA table_info(items)").fetchall()}
        for col in _ATTRIBUTION_COLUMNS:
            if col not in existing:
                conn.execute(f"ALTER TABLE items ADD COLUMN {col} TEXT")
                logger.info("Schema migration: added items.%s", col)

        for col in _ATTRIBUTION_COLUMNS:
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_items_{col} ON items({col})")

        emb_cols = conn.execute("PRAGMA table_info(embeddings)").fetchall()
        pk_cols = [row["name"] for row in emb_cols if row["pk"]]
        if pk_cols == ["item_id"]:
            # Older stores kept a single embedding per item.
            self._rebuild_embeddings_table(conn, {row["name"] for row in emb_cols})

        conn.commit()

    def _rebuild_embeddings_table(self, conn: sqlite3.Connection, columns: set) -> None:
        encoding_expr = "encoding" if "encoding" in columns else "'float32'"
        conn.execute("ALTER TABLE embeddings RENAME TO embeddings_old")
        conn.execute(
            """CREATE TABLE embeddings (
                   item_id TEXT NOT NULL REFERENCES items(id),
                   model TEXT NOT NULL,
                   dims INTEGER NOT NULL,
                   encoding TEXT NOT NULL DEFAULT 'float32',
                   vector BLOB NOT NULL,
                   updated_at INTEGER NOT NULL,
                   PRIMARY KEY (item_id, model)
               )"""
        )
        conn.execute(
            f"""INSERT INTO embeddings (item_id, model, dims, encoding, vector, updated_at)
                SELECT item_id, model, dims, {encoding_expr}, vector, updated_at
                FROM embeddings_old"""
        )
        conn.execute("DROP TABLE embeddings_old")
        logger.info("Schema migration: embeddings re-keyed by (item_id, model)")

    # ------------------------------------------------------------------
    # Item CRUD
    # ------------------------------------------------------------------

    def insert_item(
        self,
        text: str,
        item_id: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[str] = None,
        source: Optional[str] = None,
        source_id: Optional[str] = None,
        meta: Any = None,
        entity_id: Optional[str] = None,
        process_id: Optional[str] = None,
        session_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> MemoryItem:
        """Insert one item. Raises ItemValidationError; nothing is written on error."""
        if not isinstance(text, str) or not text.strip():
            raise ItemValidationError("insert_item: text is required")
        if item_id is not None and not str(item_id).strip():
            raise ItemValidationError("insert_item: id must not be blank")

        item = MemoryItem(
            id=str(item_id) if item_id is not None else uuid.uuid4().hex,
            created_at=int(created_at) if created_at is not None else _now_ms(),
            text=text,
            title=title,
            tags=tags,
            source=source,
            source_id=source_id,
            meta=_normalize_meta(meta),
            entity_id=entity_id,
            process_id=process_id,
            session_id=session_id,
        )

        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT INTO items ({_ITEM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    item.id, item.created_at, item.source, item.source_id, item.title,
                    item.text, item.tags, item.meta, item.entity_id, item.process_id,
                    item.session_id,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ItemValidationError(f"insert_item: id {item.id!r} already exists") from exc

        return item

    def get_item(self, item_id: str) -> Optional[MemoryItem]:
        """Return a single item or None."""
        row = self._get_conn().execute(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)
        ).fetchone()
        return MemoryItem.from_row(row) if row else None

    def delete_item(self, item_id: str) -> bool:
        """Delete an item and its embeddings. Returns True if found.

        Facts sourced from the item are removed by the fact store.
        """
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM embeddings WHERE item_id = ?", (item_id,))
            cur = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return cur.rowcount > 0

    def recent_items(self, limit: int = 50) -> List[MemoryItem]:
        """Most recently created items, newest first."""
        rows = self._get_conn().execute(
            f"SELECT {_ITEM_COLUMNS} FROM items ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [MemoryItem.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def search_text(self, query: str, limit: int = 10) -> List[LexicalResult]:
        """FTS5 search ordered by bm25 (best first)."""
        if not query or not query.strip():
            return []

        escaped = escape_fts5_query(query)
        try:
            rows = self._get_conn().execute(
                f"""
                SELECT {", ".join("i." + c.strip() for c in _ITEM_COLUMNS.split(","))},
                       bm25(items_fts) AS rank
                FROM items_fts
                JOIN items i ON i.rowid = items_fts.rowid
                WHERE items_fts MATCH ?
                ORDER BY rank ASC
                LIMIT ?
                """,
                (escaped, limit),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            logger.warning("FTS query rejected (query=%r escaped=%r): %s", query, escaped, exc)
            return []

        # bm25: lower is better; flip sign so higher is better
        return [LexicalResult(item=MemoryItem.from_row(r), lexical_score=-float(r["rank"])) for r in rows]

    # ------------------------------------------------------------------
    # Attribution queries
    # ------------------------------------------------------------------

    def items_by_entity(self, entity_id: str, limit: int = 50) -> List[MemoryItem]:
        """Memories attributed to an entity, newest first."""
        return self._items_where("entity_id", entity_id, "DESC", limit)

    def items_by_session(self, session_id: str, limit: int = 100) -> List[MemoryItem]:
        """Memories of one session in conversation order (oldest first)."""
        return self._items_where("session_id", session_id, "ASC", limit)

    def items_by_process(self, process_id: str, limit: int = 100) -> List[MemoryItem]:
        """Memories captured by one process/agent, newest first."""
        return self._items_where("process_id", process_id, "DESC", limit)

    def _items_where(self, column: str, value: str, order: str, limit: int) -> List[MemoryItem]:
        rows = self._get_conn().execute(
            f"""SELECT {_ITEM_COLUMNS} FROM items
                WHERE {column} = ?
                ORDER BY created_at {order}, rowid {order}
                LIMIT ?""",
            (value, limit),
        ).fetchall()
        return [MemoryItem.from_row(r) for r in rows]

    def list_entities(self) -> List[str]:
        return self._distinct("entity_id")

    def list_sessions(self) -> List[str]:
        return self._distinct("session_id")

    def list_processes(self) -> List[str]:
        return self._distinct("process_id")

    def _distinct(self, column: str) -> List[str]:
        rows = self._get_conn().execute(
            f"SELECT DISTINCT {column} AS v FROM items WHERE {column} IS NOT NULL ORDER BY {column}"
        ).fetchall()
        return [r["v"] for r in rows]

    # ------------------------------------------------------------------
    # Embedding rows
    # ------------------------------------------------------------------

    def get_embedding_row(self, item_id: str, model: str) -> Optional[Dict[str, Any]]:
        """Raw embedding row for (item, model): dims, encoding, vector, updated_at."""
        row = self._get_conn().execute(
            """SELECT item_id, model, dims, encoding, vector, updated_at
               FROM embeddings WHERE item_id = ? AND model = ?""",
            (item_id, model),
        ).fetchone()
        return dict(row) if row else None

    def put_embedding_row(
        self,
        item_id: str,
        model: str,
        dims: int,
        encoding: str,
        blob: bytes,
        updated_at: Optional[int] = None,
    ) -> None:
        """Upsert the vector for (item, model), replacing dims and encoding too."""
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO embeddings (item_id, model, dims, encoding, vector, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(item_id, model) DO UPDATE SET
                   dims = excluded.dims,
                   encoding = excluded.encoding,
                   vector = excluded.vector,
                   updated_at = excluded.updated_at""",
            (item_id, model, int(dims), encoding, blob, updated_at or _now_ms()),
        )
        conn.commit()

    def delete_embeddings(self, item_id: str) -> int:
        conn = self._get_conn()
        cur = conn.execute("DELETE FROM embeddings WHERE item_id = ?", (item_id,))
        conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_conn()
        total = conn.execute("SELECT COUNT(*) AS c FROM items").fetchone()["c"]
        by_model = conn.execute(
            "SELECT model, COUNT(*) AS c FROM embeddings GROUP BY model ORDER BY model"
        ).fetchall()
        fact_count = conn.execute("SELECT COUNT(*) AS c FROM facts").fetchone()["c"]

        return {
            "total_items": total,
            "embeddings_by_model": {r["model"]: r["c"] for r in by_model},
            "facts": fact_count,
            "entities": len(self.list_entities()),
            "sessions": len(self.list_sessions()),
        }
