"""
Rollback Engine — compensating actions over a session's ledger.

Reversal contract:
  - Entries are replayed newest first, so a memory produced by one
    consolidate and merged again by a later one ends up discarded.
  - delete      -> undiscard the target
  - update      -> restore the content recorded before the update
  - consolidate -> discard the merged memory, undiscard every original
                   (skipped if the merged memory was protected afterwards)
  - protect     -> never reversed (it only adds safety)
  - An entry whose snapshot is unusable, whose targets no longer resolve,
    or whose reversal fails is skipped with a RollbackPartialWarning in the
    log; the rest continue.
  - Each entry is reversed in its own transaction and stamped reversed_at.
  - Already-reversed entries are left alone, so rollback can be re-run.

Rollback never raises for a single bad entry: the engine always reaches
the end of the ledger and writes its journal record.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from memrefine.breaker import BreakerVerdict
from memrefine.errors import RollbackPartialWarning
from memrefine.ledger import MutationLedger
from memrefine.store import MemoryStore
from memrefine.types import (
    ConsolidateSnapshot,
    DeleteSnapshot,
    LedgerEntry,
    ProtectSnapshot,
    UpdateSnapshot,
)

logger = logging.getLogger(__name__)

# Singular/plural nouns for the journal summary
_NOUNS = {
    "consolidate": ("consolidation", "consolidations"),
    "update": ("update", "updates"),
    "delete": ("deletion", "deletions"),
}


@dataclass
class RollbackReport:
    """What a rollback did, for the journal record and the caller."""

    session_id: str
    reversed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[RollbackPartialWarning] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    pre_session_mass: Optional[int] = None
    mass_at_trip: Optional[int] = None
    post_mass: int = 0
    threshold: Optional[float] = None
    reason: str = ""

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "reversed": len(self.reversed),
            "skipped": len(self.skipped),
            "partial": self.partial,
            "counts": dict(self.counts),
            "pre_session_mass": self.pre_session_mass,
            "mass_at_trip": self.mass_at_trip,
            "post_mass": self.post_mass,
            "threshold": self.threshold,
            "reason": self.reason,
        }


def describe_counts(counts: Dict[str, int]) -> str:
    """'1 deletion, 2 updates' style summary; 'no mutations' when empty."""
    parts = []
    for kind in ("consolidate", "update", "delete"):
        n = counts.get(kind, 0)
        if n:
            singular, plural = _NOUNS[kind]
            parts.append(f"{n} {singular if n == 1 else plural}")
    return ", ".join(parts) if parts else "no mutations"


class RollbackEngine:
    """Replays a session's ledger backwards to restore the pre-session store."""

    def __init__(self, store: MemoryStore, ledger: Optional[MutationLedger] = None):
        self._store = store
        self._ledger = ledger or MutationLedger(store)

    def rollback(
        self,
        session_id: str,
        verdict: Optional[BreakerVerdict] = None,
    ) -> RollbackReport:
        """Reverse every unreversed entry of *session_id* and journal the outcome."""
        entries = self._ledger.entries(session_id, newest_first=True)
        report = RollbackReport(session_id=session_id)
        report.counts = dict(Counter(e.kind for e in entries if e.kind != "protect"))
        if verdict is not None:
            report.pre_session_mass = verdict.pre_session_mass
            report.mass_at_trip = verdict.current_mass
            report.threshold = verdict.threshold
            report.reason = verdict.reason
        else:
            report.reason = "manual rollback"

        logger.warning(
            "[rollback] %s: reversing %d ledger entries (%s)",
            session_id, len(entries), report.reason,
        )

        for entry in entries:
            if entry.reversed_at is not None or entry.kind == "protect":
                continue
            try:
                with self._store.transaction():
                    complete = self._reverse(entry, report)
                    if complete:
                        self._ledger.mark_reversed(entry.id)
            except sqlite3.Error as exc:
                self._warn(report, entry, f"storage error: {exc}")
                report.skipped.append(entry.id)
                continue
            except (KeyError, TypeError, ValueError) as exc:
                self._warn(report, entry, f"malformed entry: {exc!r}")
                report.skipped.append(entry.id)
                continue
            if complete:
                report.reversed.append(entry.id)
            else:
                report.skipped.append(entry.id)

        report.post_mass = self._store.core_mass()
        self._journal(report)
        return report

    # -- Per-kind reversal -------------------------------------------------

    def _reverse(self, entry: LedgerEntry, report: RollbackReport) -> bool:
        """Reverse one entry. Returns False if any part had to be skipped."""
        snapshot = entry.snapshot
        if snapshot is None:
            self._warn(report, entry, "snapshot missing or unreadable")
            return False

        if isinstance(snapshot, ConsolidateSnapshot):
            merged = self._store.get_memory(snapshot.result_id)
            if merged is not None and merged.constitutional:
                # Protected after the merge: constitutional memories are never discarded
                self._warn(
                    report, entry,
                    f"merged memory {snapshot.result_id} is constitutional; left in place",
                )
                return False
            complete = True
            if self._store.discard(snapshot.result_id) is None:
                self._warn(report, entry, f"merged memory {snapshot.result_id} not found")
                complete = False
            for original_id in snapshot.original_ids:
                if self._store.undiscard(original_id) is None:
                    self._warn(report, entry, f"original memory {original_id} not found")
                    complete = False
            return complete

        target_id = entry.target_ids[0] if entry.target_ids else None
        if target_id is None:
            self._warn(report, entry, "no target recorded")
            return False

        if isinstance(snapshot, UpdateSnapshot):
            restored = self._store.update_content(target_id, snapshot.before)
        elif isinstance(snapshot, DeleteSnapshot):
            restored = self._store.undiscard(target_id)
        elif isinstance(snapshot, ProtectSnapshot):
            return True
        else:
            raise TypeError(f"Unhandled snapshot type: {type(snapshot).__name__}")

        if restored is None:
            self._warn(report, entry, f"target {target_id} not found")
            return False
        return True

    # -- Reporting ---------------------------------------------------------

    @staticmethod
    def _warn(report: RollbackReport, entry: LedgerEntry, problem: str) -> None:
        warning = RollbackPartialWarning(
            f"ledger entry {entry.id} ({entry.kind}) not fully reversed: {problem}"
        )
        report.warnings.append(warning)
        logger.warning("[rollback] %s: %s", report.session_id, warning)

    def _journal(self, report: RollbackReport) -> None:
        """Audit event plus a journal memory the agent can read later."""
        self._store.log_event(
            "refinement_rollback",
            session_id=report.session_id,
            details=report.to_dict(),
        )
        if report.pre_session_mass is not None:
            masses = (
                f"Core memory went from {report.pre_session_mass} to "
                f"{report.mass_at_trip} tokens ({report.reason}) and was "
                f"restored to {report.post_mass} tokens."
            )
        else:
            masses = f"Core memory restored to {report.post_mass} tokens ({report.reason})."
        content = (
            f"Refinement session rolled back. {masses} "
            f"Reverted {describe_counts(report.counts)}."
        )
        if report.partial:
            content += f" {len(report.warnings)} reversal(s) could not be completed."
        self._store.create_memory(content, kind="journal")
        logger.info(
            "[rollback] %s done: reversed=%d skipped=%d post_mass=%d",
            report.session_id, len(report.reversed), len(report.skipped),
            report.post_mass,
        )
