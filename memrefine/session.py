"""
Refinement Session — bounded, tool-mediated curation of core memory.

Dispatch order for every call (locked):

    ① State gate       — anything but ACTIVE -> TerminatedError
    ② Command check    — unknown command -> ValidationError
    ③ Hard cap         — mutating call at mutation_count >= max -> CapExceededError
    ④ Execution        — store mutation + ledger entry + audit event, one transaction
    ⑤ Circuit breaker  — mutating calls only: live mass vs pre-session mass;
                         a trip rolls the whole session back and ends it

Errors never cross the session boundary as exceptions: every outcome is a
typed result dict the decision-maker can inspect.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import enum
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from memrefine import breaker
from memrefine.commands import (
    Command,
    Complete,
    Consolidate,
    Delete,
    Protect,
    Search,
    Update,
    action_name,
    is_mutating,
    parse_command,
)
from memrefine.config import SessionConfig
from memrefine.errors import (
    CapExceededError,
    ConstraintError,
    RefinementError,
    StorageError,
    TerminatedError,
    ValidationError,
)
from memrefine.ledger import MutationLedger
from memrefine.rollback import RollbackEngine
from memrefine.store import MemoryStore
from memrefine.types import (
    ConsolidateSnapshot,
    DeleteSnapshot,
    ProtectSnapshot,
    UpdateSnapshot,
    _generate_id,
    _now_iso,
)

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


def new_session_id() -> str:
    return _generate_id("RS")


class RefinementSession:
    """
    One refinement run against a MemoryStore.

    Owns its counters and its slice of the ledger; the memories themselves
    stay owned by the store. Operations are expected strictly one at a time.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[SessionConfig] = None,
        *,
        session_id: Optional[str] = None,
        pre_session_mass: Optional[int] = None,
        ledger: Optional[MutationLedger] = None,
        rollback_engine: Optional[RollbackEngine] = None,
    ):
        """
        Args:
            store: Store holding the memories to refine.
            config: Cap, retention threshold and content limit.
            session_id: Defaults to a fresh "RS-..." id.
            pre_session_mass: Core mass at session start. None disables the
                circuit breaker (the hard cap still applies).
        """
        self._store = store
        self._config = config or SessionConfig()
        self._session_id = session_id or new_session_id()
        self._pre_session_mass = pre_session_mass
        self._ledger = ledger or MutationLedger(store)
        self._rollback = rollback_engine or RollbackEngine(store, self._ledger)
        self._state = SessionState.ACTIVE
        self._mutation_count = 0
        self._stats: Dict[str, int] = {
            "consolidated": 0, "updated": 0, "deleted": 0, "protected": 0,
        }
        self.created_at = _now_iso()

    # -- Introspection -----------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def mutation_count(self) -> int:
        return self._mutation_count

    @property
    def max_mutations(self) -> int:
        return self._config.max_mutations

    @property
    def threshold(self) -> float:
        return self._config.retention_threshold

    @property
    def pre_session_mass(self) -> Optional[int]:
        return self._pre_session_mass

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    @property
    def store(self) -> MemoryStore:
        return self._store

    def ledger(self) -> List[Dict[str, Any]]:
        """This session's ledger, for audit display."""
        return self._ledger.export(self._session_id)

    def status(self) -> Dict[str, Any]:
        return {
            "session_id": self._session_id,
            "state": self._state.value,
            "mutation_count": self._mutation_count,
            "max_mutations": self.max_mutations,
            "pre_session_mass": self._pre_session_mass,
            "current_mass": self._store.core_mass(),
            "threshold": self.threshold,
            "stats": self.stats,
        }

    # -- Entry points ------------------------------------------------------

    def execute(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Parse a transport payload and dispatch it."""
        if not self.is_active:
            return self._terminated().to_result()
        try:
            command = parse_command(payload, self._config.max_content_length)
        except ValidationError as exc:
            logger.info("[refine] %s: rejected payload: %s", self._session_id, exc)
            return exc.to_result()
        return self.dispatch(command)

    def dispatch(self, command: Command) -> Dict[str, Any]:
        """Run one command through the locked dispatch order."""
        try:
            if not self.is_active:
                raise self._terminated()
            handler = self._handlers().get(type(command))
            if handler is None:
                raise ValidationError(
                    f"Unknown command {type(command).__name__}",
                )
            mutating = is_mutating(command)
            if mutating and self._mutation_count >= self.max_mutations:
                raise CapExceededError(
                    f"Hard cap reached: {self.max_mutations} mutating operations "
                    f"per session. Search, protect and complete remain available.",
                    mutation_count=self._mutation_count,
                )
            logger.info("[refine] %s: %s", self._session_id, action_name(command))
            result = handler(command)
            if mutating:
                self._mutation_count += 1
                result["mutation_count"] = self._mutation_count
                result["mutations_remaining"] = self.max_mutations - self._mutation_count
                verdict = breaker.evaluate(
                    self._pre_session_mass, self._store.core_mass(), self.threshold,
                )
                if verdict.tripped:
                    return self._roll_back(verdict)
            return result
        except RefinementError as exc:
            logger.info(
                "[refine] %s: %s failed (%s): %s",
                self._session_id, action_name(command), exc.code, exc,
            )
            return exc.to_result()
        except sqlite3.Error as exc:
            logger.exception("[refine] %s: storage failure", self._session_id)
            return StorageError(f"Storage failure: {exc}").to_result()

    # Convenience wrappers mirroring the transport actions

    def search(self, query: str = "") -> Dict[str, Any]:
        return self.dispatch(Search(query=query))

    def consolidate(self, ids: List[str], content: str) -> Dict[str, Any]:
        return self.execute({"action": "consolidate", "ids": list(ids), "content": content})

    def update(self, memory_id: str, content: str) -> Dict[str, Any]:
        return self.execute({"action": "update", "id": memory_id, "content": content})

    def delete(self, memory_id: str) -> Dict[str, Any]:
        return self.execute({"action": "delete", "id": memory_id})

    def protect(self, memory_id: str) -> Dict[str, Any]:
        return self.execute({"action": "protect", "id": memory_id})

    def complete(self, summary: str) -> Dict[str, Any]:
        return self.execute({"action": "complete", "summary": summary})

    # -- Handlers ----------------------------------------------------------

    def _handlers(self):
        return {
            Search: self._search,
            Consolidate: self._consolidate,
            Update: self._update,
            Delete: self._delete,
            Protect: self._protect,
            Complete: self._complete,
        }

    def _search(self, command: Search) -> Dict[str, Any]:
        results = [m.as_ledger_line() for m in self._store.search_core(command.query)]
        return {
            "type": "search_results",
            "query": command.query,
            "count": len(results),
            "results": results,
        }

    def _consolidate(self, command: Consolidate) -> Dict[str, Any]:
        ids = list(dict.fromkeys(command.ids))
        if len(ids) < 2:
            raise ConstraintError("consolidate requires at least 2 memory IDs")

        originals = []
        missing = []
        for memory_id in ids:
            memory = self._store.find_kept_core(memory_id)
            if memory is None:
                missing.append(memory_id)
            else:
                originals.append(memory)

        constitutional = [m.id for m in originals if m.constitutional]
        if constitutional:
            raise ConstraintError(
                f"Cannot consolidate constitutional memories: {', '.join(constitutional)}"
            )
        if len(originals) < 2:
            raise ConstraintError(
                f"consolidate requires at least 2 existing core memories; "
                f"found {len(originals)}",
                missing_ids=missing,
            )

        earliest = min(m.created_at for m in originals)
        with self._store.transaction():
            merged = self._store.create_memory(
                command.content, kind="core", created_at=earliest,
            )
            for memory in originals:
                self._store.discard(memory.id)
            snapshot = ConsolidateSnapshot(
                merged=[{"id": m.id, "content": m.content} for m in originals],
                result={"id": merged.id, "content": merged.content},
            )
            self._ledger.record(
                self._session_id, [m.id for m in originals], snapshot,
            )
            self._store.log_event(
                "refinement_consolidate", session_id=self._session_id,
                item_id=merged.id,
                details={"merged": snapshot.merged, "result": snapshot.result},
            )
        self._stats["consolidated"] += len(originals)

        result: Dict[str, Any] = {
            "type": "consolidated",
            "id": merged.id,
            "merged_count": len(originals),
            "merged_ids": [m.id for m in originals],
            "new_content": merged.content,
        }
        if missing:
            result["missing_ids"] = missing
        return result

    def _update(self, command: Update) -> Dict[str, Any]:
        memory = self._require(command.id)
        with self._store.transaction():
            updated = self._store.update_content(memory.id, command.content)
            self._ledger.record(
                self._session_id, [memory.id],
                UpdateSnapshot(before=memory.content, after=command.content),
            )
            self._store.log_event(
                "refinement_update", session_id=self._session_id, item_id=memory.id,
                details={"before": memory.content, "after": command.content},
            )
        self._stats["updated"] += 1
        return {"type": "updated", "id": memory.id, "content": updated.content}

    def _delete(self, command: Delete) -> Dict[str, Any]:
        memory = self._require(command.id)
        if memory.constitutional:
            raise ConstraintError(f"Cannot delete constitutional memory {memory.id}")
        with self._store.transaction():
            self._store.discard(memory.id)
            self._ledger.record(
                self._session_id, [memory.id], DeleteSnapshot(content=memory.content),
            )
            self._store.log_event(
                "refinement_delete", session_id=self._session_id, item_id=memory.id,
                details={"before": memory.content},
            )
        self._stats["deleted"] += 1
        return {"type": "deleted", "id": memory.id}

    def _protect(self, command: Protect) -> Dict[str, Any]:
        memory = self._require(command.id)
        if memory.constitutional:
            return {
                "type": "protected", "id": memory.id,
                "content": memory.content, "already_protected": True,
            }
        with self._store.transaction():
            self._store.set_constitutional(memory.id, True)
            self._ledger.record(
                self._session_id, [memory.id],
                ProtectSnapshot(was_constitutional=False),
            )
            self._store.log_event(
                "refinement_protect", session_id=self._session_id, item_id=memory.id,
            )
        self._stats["protected"] += 1
        return {"type": "protected", "id": memory.id, "content": memory.content}

    def _complete(self, command: Complete) -> Dict[str, Any]:
        # Safety net: catches mass lost outside the per-operation checks
        verdict = breaker.evaluate(
            self._pre_session_mass, self._store.core_mass(), self.threshold,
        )
        if verdict.tripped:
            return self._roll_back(verdict)

        with self._store.transaction():
            self._store.log_event(
                "refinement_complete", session_id=self._session_id,
                details={
                    "summary": command.summary,
                    "stats": self.stats,
                    "mutation_count": self._mutation_count,
                    "breaker": verdict.to_dict(),
                },
            )
            self._store.create_memory(
                f"Refinement session: {command.summary}", kind="journal",
            )
            self._store.set_meta("last_refinement_at", _now_iso())
        self._state = SessionState.COMPLETED
        logger.info(
            "[refine] %s complete: %s (mass %s -> %d)",
            self._session_id, self.stats, self._pre_session_mass,
            verdict.current_mass,
        )
        return {
            "type": "refinement_complete",
            "summary": command.summary,
            "stats": self.stats,
            "mutation_count": self._mutation_count,
        }

    # -- Helpers -----------------------------------------------------------

    def _require(self, memory_id: str):
        memory = self._store.find_kept_core(memory_id)
        if memory is None:
            raise ConstraintError(f"Memory {memory_id} not found")
        return memory

    def _terminated(self) -> TerminatedError:
        return TerminatedError(
            f"Refinement session {self._session_id} has terminated "
            f"({self._state.value}); no further operations are accepted",
            state=self._state.value,
        )

    def _roll_back(self, verdict: breaker.BreakerVerdict) -> Dict[str, Any]:
        logger.warning(
            "[refine] %s: circuit breaker tripped (%s)", self._session_id, verdict.reason,
        )
        try:
            report = self._rollback.rollback(self._session_id, verdict)
        finally:
            self._state = SessionState.ROLLED_BACK
        return {
            "type": "refinement_rolled_back",
            "reason": f"Session rolled back: {verdict.reason}",
            "stats": self.stats,
            "mutation_count": self._mutation_count,
            "rollback": report.to_dict(),
        }
