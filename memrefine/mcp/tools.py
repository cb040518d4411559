"""
memrefine MCP Tools — refinement session surface for MCP integration.

Thin wrappers around SessionRegistry, RefinementSession, and the ledger.
Each tool follows the locked middleware order:

    ① Session resolve  — explicit session_id, else the store's active or latest session
    ② Tool execution   — the session enforces state, cap, and circuit breaker
    ③ Audit log        — always, including on failure (in finally block)

Tools:
    START:   refinement_start   — open a session (calling it is the consent)
    REFINE:  memory_refine      — single discriminated entry point (action + fields)
    AUDIT:   refinement_ledger  — a session's mutation ledger
    STATUS:  refinement_status  — counters, mass, and state

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from memrefine.config import RefineConfig
from memrefine.errors import SessionConflictError
from memrefine.ledger import MutationLedger
from memrefine.registry import SessionRegistry
from memrefine.scheduler import session_prompt, start_session
from memrefine.session import RefinementSession
from memrefine.store import MemoryStore

logger = logging.getLogger(__name__)


def _no_session(session_id: Optional[str]) -> Dict[str, Any]:
    if session_id:
        message = f"Unknown refinement session {session_id}"
    else:
        message = "No active refinement session; call refinement_start first"
    return {"type": "error", "error": message, "code": "no_session"}


def register_refinement_tools(
    mcp,
    store: MemoryStore,
    config: RefineConfig,
    *,
    registry: Optional[SessionRegistry] = None,
    audit=None,
) -> None:
    """
    Register the refinement MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Fully initialized MemoryStore.
        config: RefineConfig (session limits and scheduler budget).
        registry: SessionRegistry enforcing one active session per store.
        audit: AuditLogger for structured logging.
    """
    from memrefine.mcp.audit import AuditLogger, content_digest

    if registry is None:
        registry = SessionRegistry()
    if audit is None:
        audit = AuditLogger()
    ledger = MutationLedger(store)

    def _resolve(session_id: Optional[str]) -> Optional[RefinementSession]:
        if session_id:
            return registry.get(session_id)
        # A finished session still answers, with a terminated error
        return registry.active(store) or registry.latest(store)

    # =====================================================================
    # START
    # =====================================================================

    @mcp.tool()
    def refinement_start(force: bool = False) -> Dict[str, Any]:
        """Open a memory refinement session on the core memory store.

        Calling this tool is the consent to refine. The returned prompt
        lists every core memory with its id, size, and constitutional flag.

        Args:
            force: Start even if refinement is not currently needed.

        Returns:
            session_id, pre_session_mass, max_mutations, threshold, prompt.
        """
        record = audit.begin("refinement_start")
        record.detail = {"force": force}
        try:
            session = start_session(store, config, registry=registry, force=force)
            if session is None:
                record.outcome = "skipped"
                return {"status": "skipped", "message": "Refinement is not needed right now"}
            record.bind(session)
            record.detail["pre_session_mass"] = session.pre_session_mass
            record.outcome = "ok"
            return {
                "status": "ok",
                "session_id": session.session_id,
                "pre_session_mass": session.pre_session_mass,
                "max_mutations": session.max_mutations,
                "threshold": session.threshold,
                "prompt": session_prompt(session, config),
            }
        except SessionConflictError as e:
            record.outcome = "conflict"
            return {"status": "error", "message": str(e)}
        except Exception as e:
            record.outcome = "error"
            logger.exception("refinement_start failed")
            return {"status": "error", "message": f"Start failed: {e}"}
        finally:
            audit.emit(record)

    # =====================================================================
    # REFINE
    # =====================================================================

    @mcp.tool()
    def memory_refine(
        action: str,
        session_id: Optional[str] = None,
        query: Optional[str] = None,
        ids: Optional[Union[List[str], str]] = None,
        id: Optional[str] = None,
        content: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Memory refinement tool. Actions: search, consolidate, update, delete, protect, complete.

        Mutating actions (consolidate, update, delete) are capped per session
        and followed by a retention check; falling below the threshold rolls
        the whole session back and ends it.

        Args:
            action: search, consolidate, update, delete, protect, or complete.
            session_id: Session to act on (default: the active session, else the latest one).
            query: Search text (search).
            ids: Memory IDs to merge, list or comma-separated (consolidate, >= 2).
            id: Single memory ID (update, delete, protect).
            content: New content (consolidate, update).
            summary: Session summary (complete).

        Returns:
            A result whose "type" is search_results, consolidated, updated,
            deleted, protected, refinement_complete, refinement_rolled_back,
            or error.
        """
        record = audit.begin("memory_refine", session_id)
        record.detail = {"action": action}
        if content:
            record.detail["content"] = content_digest(content)
        session = _resolve(session_id)
        try:
            if session is None:
                result = _no_session(session_id)
            else:
                result = session.execute({
                    "action": action, "query": query, "ids": ids,
                    "id": id, "content": content, "summary": summary,
                })
                record.bind(session)
            record.settle(result)
            return result
        finally:
            audit.emit(record)

    # =====================================================================
    # AUDIT / STATUS
    # =====================================================================

    @mcp.tool()
    def refinement_ledger(session_id: str) -> Dict[str, Any]:
        """Mutation ledger of a refinement session, oldest first.

        Args:
            session_id: Session whose ledger to return.

        Returns:
            count and entries (kind, targets, before/after snapshots, reversal stamp).
        """
        record = audit.begin("refinement_ledger", session_id)
        try:
            entries = ledger.export(session_id)
            record.outcome = "ok"
            record.detail = {
                "entries": len(entries),
                "reversed": sum(1 for e in entries if e["reversed_at"]),
            }
            return {"status": "ok", "session_id": session_id,
                    "count": len(entries), "entries": entries}
        except Exception as e:
            logger.exception("refinement_ledger failed")
            return {"status": "error", "message": f"Ledger read failed: {e}"}
        finally:
            audit.emit(record)

    @mcp.tool()
    def refinement_status(session_id: Optional[str] = None) -> Dict[str, Any]:
        """State, mutation count, and core mass of a refinement session.

        Args:
            session_id: Session to inspect (default: the active session).
        """
        session = registry.get(session_id) if session_id else registry.active(store)
        if session is None:
            return {"status": "idle", "store": store.stats()}
        status = session.status()
        status["status"] = "ok"
        return status
