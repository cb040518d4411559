"""
Memory Store — SQLite Persistent Backend

Tables:
    memories           - Memory records (soft-deleted via discarded_at, never removed)
    refinement_ledger  - Per-session mutation ledger (append-only, reversal stamps only)
    memory_events      - Audit log (append-only)
    store_meta         - Schema version and scheduler bookkeeping

Thread safety: one connection with check_same_thread=False, serialized by a
re-entrant lock. Transactions are explicit (BEGIN/COMMIT/ROLLBACK) and
nestable, so a mutation and its ledger row always commit together.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from memrefine.types import (
    Memory,
    MemoryEvent,
    _now_iso,
    token_estimate,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id              TEXT PRIMARY KEY,
    content         TEXT NOT NULL,
    kind            TEXT NOT NULL CHECK(kind IN ('core','journal')),
    constitutional  INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    discarded_at    TEXT
);

CREATE TABLE IF NOT EXISTS refinement_ledger (
    seq            INTEGER PRIMARY KEY AUTOINCREMENT,
    id             TEXT NOT NULL UNIQUE,
    session_id     TEXT NOT NULL,
    kind           TEXT NOT NULL,
    target_ids     TEXT NOT NULL DEFAULT '[]',   -- JSON array
    snapshot_json  TEXT,                          -- per-kind snapshot
    timestamp      TEXT NOT NULL,
    reversed_at    TEXT
);

CREATE TABLE IF NOT EXISTS memory_events (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    id            TEXT NOT NULL UNIQUE,
    action        TEXT NOT NULL,
    session_id    TEXT,
    item_id       TEXT,
    details_json  TEXT NOT NULL DEFAULT '{}',
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS store_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_kind ON memories(kind, discarded_at);
CREATE INDEX IF NOT EXISTS idx_ledger_session ON refinement_ledger(session_id);
CREATE INDEX IF NOT EXISTS idx_events_action ON memory_events(action);
CREATE INDEX IF NOT EXISTS idx_events_session ON memory_events(session_id);
"""


def _escape_like(text: str) -> str:
    """Escape LIKE wildcards so the query matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    SQLite-backed persistent store for memories, ledger rows, and events.

    Thread-safe via a re-entrant lock. Never hard-deletes a memory.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open (and create if needed) the store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self._tx_depth = 0
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('created_by', 'memrefine')",
        )
        logger.info(f"MemoryStore initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[MemoryStore]:
        """
        Run a block atomically. Nested calls join the outer transaction.

        Any exception rolls back everything written since the outermost
        BEGIN and is re-raised.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            self._conn.execute("BEGIN")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            self._conn.execute("COMMIT")

    # -- Memory writes -----------------------------------------------------

    def create_memory(
        self,
        content: str,
        kind: str = "core",
        constitutional: bool = False,
        created_at: Optional[str] = None,
    ) -> Memory:
        """Insert a new memory and return it."""
        memory = Memory(
            content=content,
            kind=kind,  # type: ignore[arg-type]
            constitutional=constitutional,
        )
        if created_at is not None:
            memory.created_at = created_at
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memories
                   (id, content, kind, constitutional, created_at, updated_at, discarded_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (
                    memory.id, memory.content, memory.kind,
                    int(memory.constitutional), memory.created_at,
                    memory.updated_at, memory.discarded_at,
                ),
            )
        return memory

    def update_content(self, memory_id: str, content: str) -> Optional[Memory]:
        """Replace a memory's content. Returns the updated memory or None."""
        return self._patch(memory_id, "content=?", (content,))

    def discard(self, memory_id: str) -> Optional[Memory]:
        """Soft-delete: stamp discarded_at, never physically remove."""
        return self._patch(memory_id, "discarded_at=?", (_now_iso(),))

    def undiscard(self, memory_id: str) -> Optional[Memory]:
        """Clear the soft-delete marker."""
        return self._patch(memory_id, "discarded_at=NULL", ())

    def set_constitutional(self, memory_id: str, value: bool = True) -> Optional[Memory]:
        """Set or clear the constitutional flag."""
        return self._patch(memory_id, "constitutional=?", (int(value),))

    def _patch(self, memory_id: str, assignment: str, params: tuple) -> Optional[Memory]:
        with self.transaction():
            cur = self._conn.execute(
                f"UPDATE memories SET {assignment}, updated_at=? WHERE id=?",
                params + (_now_iso(), memory_id),
            )
            if cur.rowcount == 0:
                return None
            return self.get_memory(memory_id)

    # -- Memory reads ------------------------------------------------------

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Read a memory by id, including discarded ones."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM memories WHERE id=?", (memory_id,)
            ).fetchone()
            return self._row_to_memory(row) if row is not None else None

    def find_kept_core(self, memory_id: str) -> Optional[Memory]:
        """Read a core memory that has not been discarded, or None."""
        memory = self.get_memory(memory_id)
        if memory is None or memory.discarded or memory.kind != "core":
            return None
        return memory

    def search_core(self, query: str = "", limit: Optional[int] = None) -> List[Memory]:
        """
        Case-insensitive substring search over kept core memories.

        An empty query lists every kept core memory. Results are ordered
        oldest first; *limit* caps them only when given.
        """
        with self._lock:
            conditions = ["kind='core'", "discarded_at IS NULL"]
            params: list = []
            query = (query or "").strip()
            if query:
                conditions.append("content LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(query)}%")
            where = " AND ".join(conditions)
            sql = f"SELECT * FROM memories WHERE {where} ORDER BY created_at, id"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_memory(row) for row in rows]

    def list_memories(
        self,
        kind: Optional[str] = None,
        include_discarded: bool = False,
        limit: int = 1000,
    ) -> List[Memory]:
        """List memories with optional filters, oldest first."""
        with self._lock:
            conditions = []
            params: list = []
            if kind:
                conditions.append("kind=?")
                params.append(kind)
            if not include_discarded:
                conditions.append("discarded_at IS NULL")
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM memories WHERE {where} ORDER BY created_at, id LIMIT ?",
                params + [limit],
            ).fetchall()
            return [self._row_to_memory(row) for row in rows]

    def core_mass(self) -> int:
        """Sum of token estimates over kept core memories, read live."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT content FROM memories WHERE kind='core' AND discarded_at IS NULL"
            ).fetchall()
            return sum(token_estimate(r["content"]) for r in rows)

    # -- Ledger rows -------------------------------------------------------

    def insert_ledger_row(
        self,
        entry_id: str,
        session_id: str,
        kind: str,
        target_ids: List[str],
        snapshot_json: Optional[str],
        timestamp: str,
    ) -> None:
        with self.transaction():
            self._conn.execute(
                """INSERT INTO refinement_ledger
                   (id, session_id, kind, target_ids, snapshot_json, timestamp)
                   VALUES (?,?,?,?,?,?)""",
                (entry_id, session_id, kind, json.dumps(target_ids),
                 snapshot_json, timestamp),
            )

    def select_ledger_rows(
        self, session_id: str, newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        order = "DESC" if newest_first else "ASC"
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM refinement_ledger WHERE session_id=? ORDER BY seq {order}",
                (session_id,),
            ).fetchall()
            return [
                {
                    "id": r["id"],
                    "session_id": r["session_id"],
                    "kind": r["kind"],
                    "target_ids": json.loads(r["target_ids"]),
                    "snapshot_json": r["snapshot_json"],
                    "timestamp": r["timestamp"],
                    "reversed_at": r["reversed_at"],
                }
                for r in rows
            ]

    def stamp_ledger_reversed(self, entry_id: str) -> None:
        with self.transaction():
            self._conn.execute(
                "UPDATE refinement_ledger SET reversed_at=? WHERE id=?",
                (_now_iso(), entry_id),
            )

    def ledger_sessions(self) -> List[str]:
        """Session ids that have at least one ledger row, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT session_id, MIN(seq) AS first FROM refinement_ledger "
                "GROUP BY session_id ORDER BY first"
            ).fetchall()
            return [r["session_id"] for r in rows]

    # -- Events (audit log) ------------------------------------------------

    def log_event(
        self,
        action: str,
        session_id: Optional[str] = None,
        item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> MemoryEvent:
        """Append an audit event."""
        event = MemoryEvent(
            action=action, session_id=session_id,
            item_id=item_id, details=details or {},
        )
        with self.transaction():
            self._conn.execute(
                """INSERT INTO memory_events
                   (id, action, session_id, item_id, details_json, timestamp)
                   VALUES (?,?,?,?,?,?)""",
                (
                    event.id, event.action, event.session_id, event.item_id,
                    json.dumps(event.details, ensure_ascii=False), event.timestamp,
                ),
            )
        return event

    def read_events(
        self,
        session_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[MemoryEvent]:
        """Query audit events, newest first."""
        with self._lock:
            conditions = []
            params: list = []
            if session_id:
                conditions.append("session_id=?")
                params.append(session_id)
            if action:
                conditions.append("action=?")
                params.append(action)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT * FROM memory_events WHERE {where} ORDER BY seq DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [
                MemoryEvent(
                    id=r["id"], action=r["action"], session_id=r["session_id"],
                    item_id=r["item_id"], details=json.loads(r["details_json"]),
                    timestamp=r["timestamp"],
                )
                for r in rows
            ]

    # -- Meta --------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM store_meta WHERE key=?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction():
            self._conn.execute(
                "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the store."""
        with self._lock:
            by_kind = {}
            for row in self._conn.execute(
                "SELECT kind, COUNT(*) AS cnt FROM memories "
                "WHERE discarded_at IS NULL GROUP BY kind"
            ).fetchall():
                by_kind[row["kind"]] = row["cnt"]
            discarded = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories WHERE discarded_at IS NOT NULL"
            ).fetchone()["cnt"]
            constitutional = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM memories "
                "WHERE constitutional=1 AND discarded_at IS NULL"
            ).fetchone()["cnt"]
            ledger_count = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM refinement_ledger"
            ).fetchone()["cnt"]
            return {
                "core": by_kind.get("core", 0),
                "journal": by_kind.get("journal", 0),
                "discarded": discarded,
                "constitutional": constitutional,
                "core_mass": self.core_mass(),
                "ledger_entries": ledger_count,
                "last_refinement_at": self.get_meta("last_refinement_at"),
            }

    # -- Internal helpers --------------------------------------------------

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            content=row["content"],
            kind=row["kind"],
            constitutional=bool(row["constitutional"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            discarded_at=row["discarded_at"],
        )
