"""SQLite persistence for memories, their vectors and episode patterns."""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
from loguru import logger

from engram.exceptions import PersistenceError
from engram.types import (
    MemoryContext,
    MemoryFilter,
    MemoryItem,
    MemoryKind,
    MemoryMetadata,
    MemorySource,
    Pattern,
)
from engram.utils import iso_str, json_dumps, json_loads, parse_iso, utcnow

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    importance REAL NOT NULL DEFAULT 0.5,
    confidence REAL NOT NULL DEFAULT 0.8,
    tags TEXT NOT NULL DEFAULT '[]',
    relationships TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    last_accessed TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    user_id TEXT,
    conversation_id TEXT,
    workspace_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_memories_kind ON memories(kind);
CREATE INDEX IF NOT EXISTS idx_memories_rank ON memories(importance DESC, last_accessed DESC);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id);
CREATE INDEX IF NOT EXISTS idx_memories_conversation ON memories(conversation_id);
CREATE INDEX IF NOT EXISTS idx_memories_workspace ON memories(workspace_id);

CREATE TABLE IF NOT EXISTS memory_vectors (
    memory_id TEXT PRIMARY KEY,
    model TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    vector BLOB NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_vectors_model ON memory_vectors(model);

CREATE TABLE IF NOT EXISTS patterns (
    id TEXT PRIMARY KEY,
    pattern_key TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL,
    frequency INTEGER NOT NULL,
    confidence REAL NOT NULL,
    related_episodes TEXT NOT NULL DEFAULT '[]',
    predictive_value REAL NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_ORDERS = {
    "importance": "importance DESC, last_accessed DESC, id ASC",
    "created": "created_at DESC, id ASC",
}


def _filter_clause(flt: MemoryFilter | None) -> tuple[str, list[Any]]:
    if flt is None:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    if flt.kinds:
        clauses.append(f"kind IN ({', '.join('?' for _ in flt.kinds)})")
        params.extend(MemoryKind(k).value for k in flt.kinds)
    if flt.min_importance is not None:
        clauses.append("importance >= ?")
        params.append(flt.min_importance)
    if flt.created_after is not None:
        clauses.append("created_at >= ?")
        params.append(iso_str(flt.created_after))
    if flt.created_before is not None:
        clauses.append("created_at <= ?")
        params.append(iso_str(flt.created_before))
    for column in ("user_id", "conversation_id", "workspace_id"):
        value = getattr(flt, column)
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), params


def _vector_blob(vector: np.ndarray) -> tuple[bytes, int]:
    arr = np.ascontiguousarray(np.asarray(vector, dtype=np.float32).ravel())
    return arr.tobytes(), int(arr.shape[0])


class SQLiteStore:
    """Durable source of truth for memories.

    Every write commits in a single transaction; a memory and its vector are
    always written together so no record is left without an embedding.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=30000")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open {db_path}: {exc}") from exc
        self._init_schema()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._conn.cursor()
                cur.executescript(_SCHEMA)
                cur.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                self._conn.commit()
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise PersistenceError(str(e)) from e

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as exc:
            logger.error("sqlite transaction failed: {}", exc)
            raise PersistenceError(str(exc)) from exc

    def _fetch(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    # --- Memories ---

    def insert_memory(self, item: MemoryItem, vector: np.ndarray, model: str) -> str:
        """Persist a memory and its embedding atomically."""
        blob, dim = _vector_blob(vector)
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO memories(id, kind, content, context, importance, confidence,
                   tags, relationships, created_at, last_accessed, access_count, source,
                   metadata, user_id, conversation_id, workspace_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                self._memory_params(item),
            )
            conn.execute(
                """INSERT INTO memory_vectors(memory_id, model, dimension, vector, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (item.id, model, dim, blob, iso_str(utcnow())),
            )
        return item.id

    def get_memory(self, memory_id: str) -> MemoryItem | None:
        rows = self._fetch("SELECT * FROM memories WHERE id=?", (memory_id,))
        return self._row_to_memory(rows[0]) if rows else None

    def get_memories(self, memory_ids: list[str]) -> dict[str, MemoryItem]:
        if not memory_ids:
            return {}
        out: dict[str, MemoryItem] = {}
        # Stay under SQLITE_MAX_VARIABLE_NUMBER on old builds.
        for start in range(0, len(memory_ids), 500):
            batch = memory_ids[start:start + 500]
            placeholders = ", ".join("?" for _ in batch)
            for row in self._fetch(f"SELECT * FROM memories WHERE id IN ({placeholders})", batch):
                item = self._row_to_memory(row)
                out[item.id] = item
        return out

    def replace_memory(
        self,
        item: MemoryItem,
        vector: np.ndarray | None = None,
        model: str | None = None,
    ) -> bool:
        """Overwrite a stored memory (and optionally its vector) in one transaction."""
        params = self._memory_params(item)
        with self._tx() as conn:
            cur = conn.execute(
                """UPDATE memories SET kind=?, content=?, context=?, importance=?, confidence=?,
                   tags=?, relationships=?, created_at=?, last_accessed=?, access_count=?,
                   source=?, metadata=?, user_id=?, conversation_id=?, workspace_id=?
                   WHERE id=?""",
                params[1:] + (params[0],),
            )
            if cur.rowcount == 0:
                return False
            if vector is not None:
                if not model:
                    raise ValueError("model is required when replacing a vector")
                blob, dim = _vector_blob(vector)
                conn.execute(
                    """INSERT OR REPLACE INTO memory_vectors(memory_id, model, dimension, vector, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (item.id, model, dim, blob, iso_str(utcnow())),
                )
        return True

    def delete_memory(self, memory_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id=?", (memory_id,))
        return cur.rowcount > 0

    def list_memories(
        self,
        flt: MemoryFilter | None = None,
        limit: int | None = None,
        offset: int = 0,
        order: str = "importance",
    ) -> list[MemoryItem]:
        if order not in _ORDERS:
            raise ValueError(f"Unknown order: {order}")
        where, params = _filter_clause(flt)
        sql = f"SELECT * FROM memories{where} ORDER BY {_ORDERS[order]} LIMIT ? OFFSET ?"
        rows = self._fetch(sql, params + [-1 if limit is None else limit, offset])
        return [self._row_to_memory(r) for r in rows]

    def count_memories(self, kind: MemoryKind | None = None) -> int:
        if kind is None:
            rows = self._fetch("SELECT COUNT(*) FROM memories")
        else:
            rows = self._fetch("SELECT COUNT(*) FROM memories WHERE kind=?", (MemoryKind(kind).value,))
        return rows[0][0]

    def touch_memories(self, memory_ids: list[str], at: datetime | None = None) -> list[str]:
        """Increment access counters; returns the ids that still exist."""
        stamp = iso_str(at or utcnow())
        touched: list[str] = []
        with self._tx() as conn:
            for mid in memory_ids:
                cur = conn.execute(
                    "UPDATE memories SET access_count = access_count + 1, last_accessed=? WHERE id=?",
                    (stamp, mid),
                )
                if cur.rowcount > 0:
                    touched.append(mid)
        return touched

    def find_referencing(self, memory_ids: list[str]) -> list[MemoryItem]:
        """Memories whose relationships or contradicts lists mention any of ``memory_ids``."""
        if not memory_ids:
            return []
        placeholders = ", ".join("?" for _ in memory_ids)
        rows = self._fetch(
            f"""SELECT * FROM memories m
                WHERE EXISTS (SELECT 1 FROM json_each(m.relationships) j
                              WHERE j.value IN ({placeholders}))
                   OR EXISTS (SELECT 1 FROM json_each(m.metadata, '$.contradicts') j
                              WHERE j.value IN ({placeholders}))
                ORDER BY m.id""",
            list(memory_ids) * 2,
        )
        return [self._row_to_memory(r) for r in rows]

    # --- Vectors ---

    def get_vector(self, memory_id: str, model: str | None = None) -> np.ndarray | None:
        rows = self._fetch(
            "SELECT model, dimension, vector FROM memory_vectors WHERE memory_id=?", (memory_id,)
        )
        if not rows or (model is not None and rows[0]["model"] != model):
            return None
        return self._blob_to_vector(rows[0])

    def iter_vectors(self, model: str) -> Iterator[tuple[str, np.ndarray]]:
        rows = self._fetch(
            "SELECT memory_id, model, dimension, vector FROM memory_vectors WHERE model=? ORDER BY memory_id",
            (model,),
        )
        for row in rows:
            yield row["memory_id"], self._blob_to_vector(row)

    def list_ids_without_vector(self, model: str) -> list[str]:
        """Memories with no vector for ``model`` (never embedded, or embedded by another model)."""
        rows = self._fetch(
            """SELECT m.id FROM memories m
               LEFT JOIN memory_vectors v ON v.memory_id = m.id AND v.model = ?
               WHERE v.memory_id IS NULL ORDER BY m.id""",
            (model,),
        )
        return [r[0] for r in rows]

    # --- Patterns ---

    def upsert_pattern(self, pattern: Pattern) -> str:
        with self._tx() as conn:
            conn.execute(
                """INSERT INTO patterns(id, pattern_key, description, frequency, confidence,
                   related_episodes, predictive_value, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(pattern_key) DO UPDATE SET
                     description=excluded.description,
                     frequency=excluded.frequency,
                     confidence=excluded.confidence,
                     related_episodes=excluded.related_episodes,
                     predictive_value=excluded.predictive_value,
                     updated_at=excluded.updated_at""",
                (
                    pattern.id, pattern.pattern_key, pattern.description, pattern.frequency,
                    pattern.confidence, json_dumps(pattern.related_episodes),
                    pattern.predictive_value, iso_str(pattern.updated_at),
                ),
            )
        rows = self._fetch("SELECT id FROM patterns WHERE pattern_key=?", (pattern.pattern_key,))
        return rows[0][0]

    def list_patterns(self, limit: int = 100) -> list[Pattern]:
        rows = self._fetch(
            "SELECT * FROM patterns ORDER BY frequency DESC, pattern_key ASC LIMIT ?", (limit,)
        )
        return [self._row_to_pattern(r) for r in rows]

    # --- Row Converters ---

    @staticmethod
    def _memory_params(item: MemoryItem) -> tuple:
        return (
            item.id,
            item.kind.value,
            item.content,
            json_dumps(item.context.model_dump(mode="json")),
            item.importance,
            item.confidence,
            json_dumps(item.tags),
            json_dumps(item.relationships),
            iso_str(item.created_at),
            iso_str(item.last_accessed),
            item.access_count,
            json_dumps(item.source.model_dump(mode="json")),
            json_dumps(item.metadata.model_dump(mode="json")),
            item.context.user_id,
            item.context.conversation_id,
            item.context.workspace_id,
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> MemoryItem:
        return MemoryItem(
            id=row["id"],
            kind=MemoryKind(row["kind"]),
            content=row["content"],
            context=MemoryContext.model_validate(json_loads(row["context"])),
            importance=row["importance"],
            confidence=row["confidence"],
            tags=json_loads(row["tags"]),
            relationships=json_loads(row["relationships"]),
            created_at=parse_iso(row["created_at"]),
            last_accessed=parse_iso(row["last_accessed"]),
            access_count=row["access_count"],
            source=MemorySource.model_validate(json_loads(row["source"])),
            metadata=MemoryMetadata.model_validate(json_loads(row["metadata"])),
        )

    @staticmethod
    def _blob_to_vector(row: sqlite3.Row) -> np.ndarray:
        vec = np.frombuffer(row["vector"], dtype=np.float32).copy()
        if vec.shape[0] != row["dimension"]:
            raise PersistenceError(
                f"Corrupt vector: stored dimension {row['dimension']}, blob has {vec.shape[0]}"
            )
        return vec

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> Pattern:
        return Pattern(
            id=row["id"],
            pattern_key=row["pattern_key"],
            description=row["description"],
            frequency=row["frequency"],
            confidence=row["confidence"],
            related_episodes=json_loads(row["related_episodes"]),
            predictive_value=row["predictive_value"],
            updated_at=parse_iso(row["updated_at"]),
        )
