"""
MCP Audit Trail — one JSONL line per refinement tool call.

Complements the in-store event table: it also records calls the session
refused (terminated, cap reached, validation) and calls that never reached
a session, for observability outside the database.

Record fields (schema v2):
    v, ts, rid, tool, outcome, ms   always
    sid, state, mc, left            once a session is bound
    rb                              when the call ended in a rollback
    d                               tool-specific extras (content digest, ...)

Memory content never appears raw: only a 120-char preview, its SHA-256
and its size. Emitting is fire-and-forget and never disrupts a tool call.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TextIO

from memrefine.types import _now_iso

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 2
PREVIEW_MAX_CHARS = 120


def content_digest(content: str) -> Dict[str, Any]:
    """Preview (newlines flattened, '…' when cut), SHA-256 and byte size."""
    raw = content.encode("utf-8")
    preview = " ".join(content[:PREVIEW_MAX_CHARS].split())
    if len(content) > PREVIEW_MAX_CHARS:
        preview += "…"
    return {
        "preview": preview,
        "hash": hashlib.sha256(raw).hexdigest(),
        "bytes": len(raw),
    }


@dataclass
class AuditRecord:
    """One tool call, filled in as the call progresses."""

    tool: str
    session_id: Optional[str] = None
    outcome: str = "error"
    state: Optional[str] = None
    mutation_count: Optional[int] = None
    mutations_remaining: Optional[int] = None
    rollback: Optional[Dict[str, Any]] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    rid: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)

    def bind(self, session) -> None:
        """Copy the session's id, state and counters into the record."""
        self.session_id = session.session_id
        self.state = session.state.value
        self.mutation_count = session.mutation_count
        self.mutations_remaining = max(0, session.max_mutations - session.mutation_count)

    def settle(self, result: Dict[str, Any]) -> None:
        """Take the outcome (and any rollback summary) from a tool result."""
        self.outcome = result.get("type") or result.get("status") or "error"
        if result.get("type") == "error" and result.get("code"):
            self.outcome = f"error:{result['code']}"
        rollback = result.get("rollback")
        if rollback:
            self.rollback = {
                k: rollback.get(k)
                for k in ("reversed", "skipped", "partial", "post_mass")
            }

    def to_dict(self, now: Optional[str] = None) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": now or _now_iso(),
            "rid": self.rid,
            "tool": self.tool,
            "sid": self.session_id,
            "outcome": self.outcome,
        }
        if self.state is not None:
            record["state"] = self.state
            record["mc"] = self.mutation_count
            record["left"] = self.mutations_remaining
        if self.rollback:
            record["rb"] = self.rollback
        if self.detail:
            record["d"] = self.detail
        record["ms"] = round((time.monotonic() - self.started) * 1000, 1)
        return record


class AuditLogger:
    """Writes AuditRecords as JSONL to a stream (stderr by default)."""

    def __init__(self, output: Optional[TextIO] = None):
        self._output = output if output is not None else sys.stderr

    def begin(self, tool: str, session_id: Optional[str] = None) -> AuditRecord:
        return AuditRecord(tool=tool, session_id=session_id)

    def emit(self, record: AuditRecord) -> None:
        """Write one line. Never raises."""
        try:
            line = json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception as exc:
            logger.debug("[audit] dropped %s record: %s", record.tool, exc)
