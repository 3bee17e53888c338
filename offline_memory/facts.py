"""Fact store: (subject, predicate, object) triples with a confidence.

Facts live in the ``facts`` table of the shared SQLite store.  Confidence is
clamped to [0, 1] on every write; out-of-range input is corrected rather
than rejected.

Substring search is case-insensitive (SQLite ``LIKE``, ASCII case folding)
across subject, predicate and object.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .storage import MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.7

_FACT_COLUMNS = "id, created_at, subject, predicate, object, confidence, source_item_id, entity_id"


class FactValidationError(ValueError):
    """Raised when a fact is missing its subject or predicate."""


def clamp_confidence(value: Any) -> float:
    """Clamp to [0, 1]. NaN and non-numeric values become 0.0."""
    try:
        c = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(c):
        return 0.0
    return max(0.0, min(1.0, c))


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class Fact:
    id: str
    created_at: int
    subject: str
    predicate: str
    object: str
    confidence: float = DEFAULT_CONFIDENCE
    source_item_id: Optional[str] = None
    entity_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Fact":
        return cls(
            id=row["id"],
            created_at=int(row["created_at"]),
            subject=row["subject"],
            predicate=row["predicate"],
            object=row["object"],
            confidence=float(row["confidence"]),
            source_item_id=row["source_item_id"],
            entity_id=row["entity_id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FactStore:
    """CRUD and lookup over stored facts."""

    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def _conn(self) -> sqlite3.Connection:
        return self.storage.connection()

    def _select(self, where: str = "", params: tuple = (), order: str = "", limit: Optional[int] = None) -> List[Fact]:
        sql = f"SELECT {_FACT_COLUMNS} FROM facts"
        if where:
            sql += f" WHERE {where}"
        if order:
            sql += f" ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        return [Fact.from_row(r) for r in self._conn().execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_fact(
        self,
        subject: str,
        predicate: str,
        object: str,
        confidence: float = DEFAULT_CONFIDENCE,
        source_item_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        fact_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> Fact:
        """Insert one fact; subject and predicate must be non-blank."""
        if not isinstance(subject, str) or not subject.strip():
            raise FactValidationError("insert_fact: subject is required")
        if not isinstance(predicate, str) or not predicate.strip():
            raise FactValidationError("insert_fact: predicate is required")
        if object is None:
            raise FactValidationError("insert_fact: object is required")

        fact = Fact(
            id=fact_id or uuid.uuid4().hex,
            created_at=int(created_at) if created_at is not None else int(time.time() * 1000),
            subject=subject.strip(),
            predicate=predicate.strip(),
            object=str(object).strip(),
            confidence=clamp_confidence(confidence),
            source_item_id=source_item_id,
            entity_id=entity_id,
        )

        conn = self._conn()
        try:
            conn.execute(
                f"INSERT INTO facts ({_FACT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    fact.id, fact.created_at, fact.subject, fact.predicate, fact.object,
                    fact.confidence, fact.source_item_id, fact.entity_id,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise FactValidationError(f"insert_fact: id {fact.id!r} already exists") from exc
        return fact

    def update_confidence(self, fact_id: str, confidence: float) -> Optional[Fact]:
        conn = self._conn()
        cur = conn.execute(
            "UPDATE facts SET confidence = ? WHERE id = ?",
            (clamp_confidence(confidence), fact_id),
        )
        conn.commit()
        if cur.rowcount == 0:
            return None
        return self.get_fact(fact_id)

    def delete_fact(self, fact_id: str) -> bool:
        conn = self._conn()
        cur = conn.execute("DELETE FROM facts WHERE id = ?", (fact_id,))
        conn.commit()
        return cur.rowcount > 0

    def delete_by_source_item(self, item_id: str) -> int:
        """Remove every fact extracted from ``item_id``. Returns the count."""
        conn = self._conn()
        cur = conn.execute("DELETE FROM facts WHERE source_item_id = ?", (item_id,))
        conn.commit()
        return cur.rowcount

    def forget_item(self, item_id: str, cascade_facts: bool = True) -> Dict[str, Any]:
        """Delete an item (and its embeddings), optionally with its facts.

        Nothing is written when the item does not exist.  The fact, embedding
        and item deletes share one transaction.
        """
        if self.storage.get_item(item_id) is None:
            return {"deleted": False, "facts_deleted": 0}

        conn = self._conn()
        try:
            facts_deleted = 0
            if cascade_facts:
                cur = conn.execute("DELETE FROM facts WHERE source_item_id = ?", (item_id,))
                facts_deleted = cur.rowcount
            conn.execute("DELETE FROM embeddings WHERE item_id = ?", (item_id,))
            cur = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
            deleted = cur.rowcount > 0
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info("Forgot item %s (%d facts)", item_id, facts_deleted)
        return {"deleted": deleted, "facts_deleted": facts_deleted}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        facts = self._select("id = ?", (fact_id,))
        return facts[0] if facts else None

    def facts_by_subject(self, subject: str, limit: int = 100) -> List[Fact]:
        return self._select("subject = ?", (subject,), "confidence DESC, created_at DESC", limit)

    def all_facts(self, entity_id: Optional[str] = None, limit: Optional[int] = None) -> List[Fact]:
        if entity_id is not None:
            return self._select("entity_id = ?", (entity_id,), "created_at DESC, rowid DESC", limit)
        return self._select(order="created_at DESC, rowid DESC", limit=limit)

    def search(self, query: str, limit: int = 50) -> List[Fact]:
        """Case-insensitive substring match over subject, predicate and object."""
        pattern = f"%{_escape_like(query or '')}%"
        return self._select(
            "subject LIKE ? ESCAPE '\\' OR predicate LIKE ? ESCAPE '\\' OR object LIKE ? ESCAPE '\\'",
            (pattern, pattern, pattern),
            "confidence DESC, created_at DESC",
            limit,
        )

    def list_subjects(self) -> List[str]:
        rows = self._conn().execute("SELECT DISTINCT subject FROM facts ORDER BY subject").fetchall()
        return [r["subject"] for r in rows]

    def list_predicates(self) -> List[str]:
        rows = self._conn().execute("SELECT DISTINCT predicate FROM facts ORDER BY predicate").fetchall()
        return [r["predicate"] for r in rows]

    def count(self) -> int:
        return self._conn().execute("SELECT COUNT(*) AS c FROM facts").fetchone()["c"]
