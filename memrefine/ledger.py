"""
Mutation Ledger — per-session undo log.

Every successful mutating operation appends exactly one entry carrying the
snapshot needed to reverse it. Entries are write-once: the only later change
is the reversal stamp set by the rollback engine.

record() must run inside the same store transaction as the mutation it
describes, so a mutation is never committed without its entry.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from memrefine.store import MemoryStore
from memrefine.types import (
    LedgerEntry,
    Snapshot,
    snapshot_from_json,
    snapshot_kind,
    snapshot_to_json,
)

logger = logging.getLogger(__name__)


class MutationLedger:
    """Typed append/read access to the refinement_ledger table."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def record(
        self,
        session_id: str,
        target_ids: List[str],
        snapshot: Snapshot,
    ) -> LedgerEntry:
        """Append one entry. The operation kind follows from the snapshot variant."""
        entry = LedgerEntry(
            session_id=session_id,
            kind=snapshot_kind(snapshot),
            target_ids=list(target_ids),
            snapshot=snapshot,
        )
        self._store.insert_ledger_row(
            entry.id, entry.session_id, entry.kind, entry.target_ids,
            snapshot_to_json(snapshot), entry.timestamp,
        )
        logger.debug(
            "[ledger] %s %s targets=%s", session_id, entry.kind, entry.target_ids,
        )
        return entry

    def entries(self, session_id: str, newest_first: bool = False) -> List[LedgerEntry]:
        """All entries of a session. Unreadable snapshots come back as None."""
        return [
            LedgerEntry(
                id=row["id"],
                session_id=row["session_id"],
                kind=row["kind"],
                target_ids=row["target_ids"],
                snapshot=snapshot_from_json(row["kind"], row["snapshot_json"]),
                timestamp=row["timestamp"],
                reversed_at=row["reversed_at"],
            )
            for row in self._store.select_ledger_rows(session_id, newest_first)
        ]

    def mark_reversed(self, entry_id: str) -> None:
        self._store.stamp_ledger_reversed(entry_id)

    def export(self, session_id: str) -> List[Dict[str, Any]]:
        """Plain dicts for the admin log viewer, oldest first."""
        return [entry.to_dict() for entry in self.entries(session_id)]
