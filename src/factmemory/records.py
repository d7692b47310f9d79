"""
Relational record store backed by sqlite3.

Holds every :class:`MemoryRecord` ever written.  Records are never deleted;
superseded facts are kept with ``is_current = 0`` for audit.  The vectors
themselves live in the ChromaDB collection (see :mod:`factmemory.store`);
this table only tracks each record's embedding status.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from .intelligence import estimate_tokens

logger = logging.getLogger(__name__)

EMBEDDING_PENDING = "pending"
EMBEDDING_READY = "ready"
EMBEDDING_FAILED = "failed"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id                     INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                TEXT    NOT NULL,
    category               TEXT    NOT NULL,
    subcategory            TEXT    NOT NULL DEFAULT 'general',
    content                TEXT    NOT NULL CHECK (length(trim(content)) > 0),
    token_count            INTEGER NOT NULL,
    relevance_score        REAL    NOT NULL DEFAULT 0.5,
    usage_frequency        INTEGER NOT NULL DEFAULT 0,
    created_at             REAL    NOT NULL,
    last_accessed_at       REAL    NOT NULL,
    is_current             INTEGER NOT NULL DEFAULT 1,
    superseded_by          INTEGER,
    fingerprint            TEXT,
    fingerprint_confidence REAL,
    fingerprint_method     TEXT,
    embedding_status       TEXT    NOT NULL DEFAULT 'pending',
    metadata               TEXT    NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_memories_user_current
    ON memories (user_id, is_current, category);
CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_current_fingerprint
    ON memories (user_id, fingerprint)
    WHERE is_current = 1 AND fingerprint IS NOT NULL;
CREATE TABLE IF NOT EXISTS dynamic_categories (
    name        TEXT PRIMARY KEY,
    keywords    TEXT NOT NULL,
    patterns    TEXT NOT NULL DEFAULT '[]',
    topics      TEXT NOT NULL DEFAULT '[]',
    description TEXT NOT NULL DEFAULT '',
    priority    TEXT NOT NULL,
    created_at  REAL NOT NULL
);
"""

_COLUMNS = (
    "id, user_id, category, subcategory, content, token_count, relevance_score, "
    "usage_frequency, created_at, last_accessed_at, is_current, superseded_by, "
    "fingerprint, fingerprint_confidence, fingerprint_method, embedding_status, metadata"
)


@dataclass
class MemoryRecord:
    """One stored fact."""

    id: int
    user_id: str
    category: str
    subcategory: str
    content: str
    token_count: int
    relevance_score: float
    usage_frequency: int
    created_at: float
    last_accessed_at: float
    is_current: bool
    superseded_by: int | None = None
    fingerprint: str | None = None
    fingerprint_confidence: float | None = None
    fingerprint_method: str | None = None
    embedding_status: str = EMBEDDING_PENDING
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_embedding(self) -> bool:
        return self.embedding_status == EMBEDDING_READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "category": self.category,
            "subcategory": self.subcategory,
            "content": self.content,
            "token_count": self.token_count,
            "relevance_score": round(self.relevance_score, 4),
            "usage_frequency": self.usage_frequency,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "is_current": self.is_current,
            "superseded_by": self.superseded_by,
            "fingerprint": self.fingerprint,
            "fingerprint_confidence": self.fingerprint_confidence,
            "fingerprint_method": self.fingerprint_method,
            "embedding_status": self.embedding_status,
            "metadata": self.metadata,
        }


@dataclass
class NewRecord:
    """Fields of a record that has not been persisted yet."""

    user_id: str
    category: str
    content: str
    subcategory: str = "general"
    relevance_score: float = 0.5
    fingerprint: str | None = None
    fingerprint_confidence: float | None = None
    fingerprint_method: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
    return MemoryRecord(
        id=row["id"],
        user_id=row["user_id"],
        category=row["category"],
        subcategory=row["subcategory"],
        content=row["content"],
        token_count=row["token_count"],
        relevance_score=row["relevance_score"],
        usage_frequency=row["usage_frequency"],
        created_at=row["created_at"],
        last_accessed_at=row["last_accessed_at"],
        is_current=bool(row["is_current"]),
        superseded_by=row["superseded_by"],
        fingerprint=row["fingerprint"],
        fingerprint_confidence=row["fingerprint_confidence"],
        fingerprint_method=row["fingerprint_method"],
        embedding_status=row["embedding_status"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


class RecordStore:
    """
    Thread-safe sqlite3 store for memory records.

    A single connection is shared behind a lock; every write runs in its
    own transaction, so a record only becomes current once it is fully
    persisted.

    Parameters
    ----------
    path:
        sqlite database file, or ``":memory:"`` for a throwaway store.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def insert(
        self,
        record: NewRecord,
        supersede: int | None = None,
        history_of: int | None = None,
    ) -> int:
        """
        Persist *record* and return its id.

        supersede:
            Id of a current record that the new one replaces.  It is marked
            non-current in the same transaction, before the new row is
            inserted, so the (user, fingerprint) uniqueness index holds.
        history_of:
            Id of a current record that keeps winning over the new one.  The
            new row is stored non-current, pointing at the winner.
        """
        now = time.time()
        is_current = 0 if history_of is not None else 1
        with self._lock, self._conn:
            cur = self._conn.cursor()
            if supersede is not None:
                cur.execute(
                    "UPDATE memories SET is_current = 0 WHERE id = ? AND is_current = 1",
                    (supersede,),
                )
            cur.execute(
                """
                INSERT INTO memories (
                    user_id, category, subcategory, content, token_count,
                    relevance_score, usage_frequency, created_at, last_accessed_at,
                    is_current, superseded_by, fingerprint, fingerprint_confidence,
                    fingerprint_method, embedding_status, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.category,
                    record.subcategory,
                    record.content,
                    estimate_tokens(record.content),
                    record.relevance_score,
                    now,
                    now,
                    is_current,
                    history_of,
                    record.fingerprint,
                    record.fingerprint_confidence,
                    record.fingerprint_method,
                    EMBEDDING_PENDING,
                    json.dumps(record.metadata),
                ),
            )
            new_id = int(cur.lastrowid)
            if supersede is not None:
                cur.execute(
                    "UPDATE memories SET superseded_by = ? WHERE id = ?",
                    (new_id, supersede),
                )
        return new_id

    def boost(self, record_id: int, relevance_boost: float) -> None:
        """Count another sighting of a duplicate fact."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE memories
                SET usage_frequency = usage_frequency + 1,
                    relevance_score = MIN(1.0, relevance_score + ?),
                    last_accessed_at = ?
                WHERE id = ?
                """,
                (relevance_boost, time.time(), record_id),
            )

    def touch(self, record_ids: Iterable[int]) -> None:
        ids = list(record_ids)
        if not ids:
            return
        now = time.time()
        with self._lock, self._conn:
            self._conn.executemany(
                "UPDATE memories SET last_accessed_at = ? WHERE id = ?",
                [(now, i) for i in ids],
            )

    def set_embedding_status(self, record_id: int, status: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE memories SET embedding_status = ? WHERE id = ?",
                (status, record_id),
            )

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def _select(self, where: str, params: tuple = (), suffix: str = "") -> list[MemoryRecord]:
        sql = f"SELECT {_COLUMNS} FROM memories WHERE {where} {suffix}"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def get(self, record_id: int) -> MemoryRecord | None:
        found = self._select("id = ?", (record_id,))
        return found[0] if found else None

    def get_many(self, record_ids: Iterable[int]) -> list[MemoryRecord]:
        ids = list(record_ids)
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        return self._select(f"id IN ({marks})", tuple(ids), "ORDER BY id")

    def current(
        self,
        user_id: str,
        category: str | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Current records for *user_id*, oldest first."""
        where, params = "user_id = ? AND is_current = 1", (user_id,)
        if category is not None:
            where += " AND category = ?"
            params += (category,)
        suffix = "ORDER BY id"
        if limit is not None:
            suffix += f" LIMIT {int(limit)}"
        return self._select(where, params, suffix)

    def current_by_fingerprint(self, user_id: str, fingerprint: str) -> MemoryRecord | None:
        found = self._select(
            "user_id = ? AND fingerprint = ? AND is_current = 1",
            (user_id, fingerprint),
        )
        return found[0] if found else None

    def history(self, user_id: str, fingerprint: str) -> list[MemoryRecord]:
        """Every record ever written for a fingerprint, oldest first."""
        return self._select(
            "user_id = ? AND fingerprint = ?", (user_id, fingerprint), "ORDER BY id"
        )

    def search_current(self, user_id: str, terms: Iterable[str]) -> list[MemoryRecord]:
        """Current records of *user_id* whose content contains any of *terms*."""
        terms = [t for t in terms if t]
        if not terms:
            return []
        clause = " OR ".join("lower(content) LIKE ?" for _ in terms)
        params = (user_id,) + tuple(f"%{t.lower()}%" for t in terms)
        return self._select(f"user_id = ? AND is_current = 1 AND ({clause})", params, "ORDER BY id")

    def with_embedding_status(self, *statuses: str) -> list[MemoryRecord]:
        marks = ", ".join("?" for _ in statuses)
        return self._select(
            f"is_current = 1 AND embedding_status IN ({marks})", tuple(statuses), "ORDER BY id"
        )

    def count(self, user_id: str | None = None, current_only: bool = True) -> int:
        where, params = "1 = 1", ()
        if user_id is not None:
            where += " AND user_id = ?"
            params += (user_id,)
        if current_only:
            where += " AND is_current = 1"
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM memories WHERE {where}", params).fetchone()
        return int(row[0])

    def category_usage(self, user_id: str) -> dict[str, int]:
        """Token usage of current records per category."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT category, SUM(token_count) FROM memories
                WHERE user_id = ? AND is_current = 1
                GROUP BY category
                """,
                (user_id,),
            ).fetchall()
        return {r[0]: int(r[1] or 0) for r in rows}

    def embedding_status_counts(self, user_id: str) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT embedding_status, COUNT(*) FROM memories
                WHERE user_id = ? AND is_current = 1
                GROUP BY embedding_status
                """,
                (user_id,),
            ).fetchall()
        return {r[0]: int(r[1]) for r in rows}

    # ------------------------------------------------------------------
    # Dynamic categories
    # ------------------------------------------------------------------

    def save_category(
        self,
        name: str,
        keywords: list[str],
        patterns: list[str],
        topics: list[str],
        description: str,
        priority: str,
    ) -> None:
        """Persist a runtime category definition so it survives a restart."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO dynamic_categories
                    (name, keywords, patterns, topics, description, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    json.dumps(list(keywords)),
                    json.dumps(list(patterns)),
                    json.dumps(list(topics)),
                    description,
                    priority,
                    time.time(),
                ),
            )

    def dynamic_categories(self) -> list[dict[str, Any]]:
        """Saved runtime categories, in registration order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name, keywords, patterns, topics, description, priority "
                "FROM dynamic_categories ORDER BY created_at, name"
            ).fetchall()
        return [
            {
                "name": r["name"],
                "keywords": json.loads(r["keywords"]),
                "patterns": json.loads(r["patterns"]),
                "topics": json.loads(r["topics"]),
                "description": r["description"],
                "priority": r["priority"],
            }
            for r in rows
        ]
