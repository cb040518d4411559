"""
Tests for the 4 MCP tools in memrefine.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import io
import json

import pytest

from memrefine.config import RefineConfig, SessionConfig, StoreConfig
from memrefine.mcp.audit import AuditLogger
from memrefine.registry import SessionRegistry
from memrefine.store import MemoryStore


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


@pytest.fixture
def mcp_env(tmp_path):
    """Create store, config, mock MCP, audit buffer, and register all tools."""
    db_path = str(tmp_path / "refine.db")
    config = RefineConfig(
        store=StoreConfig(db_path=db_path),
        session=SessionConfig(max_mutations=3),
    )
    store = MemoryStore(db_path=db_path)
    audit_buf = io.StringIO()
    mcp = MockMCP()

    from memrefine.mcp.tools import register_refinement_tools
    register_refinement_tools(
        mcp, store, config,
        registry=SessionRegistry(),
        audit=AuditLogger(output=audit_buf),
    )

    yield {"mcp": mcp, "store": store, "config": config, "audit": audit_buf}
    store.close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    env["audit"].seek(0)
    return [json.loads(ln) for ln in env["audit"].read().splitlines() if ln]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_all_tool_names(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == {
            "refinement_start", "memory_refine",
            "refinement_ledger", "refinement_status",
        }


# ---------------------------------------------------------------------------
# refinement_start
# ---------------------------------------------------------------------------


class TestStart:
    def test_skipped_on_empty_store(self, mcp_env):
        assert call(mcp_env, "refinement_start")["status"] == "skipped"

    def test_start_returns_prompt(self, mcp_env):
        m = mcp_env["store"].create_memory("User likes tea")
        r = call(mcp_env, "refinement_start")
        assert r["status"] == "ok"
        assert r["session_id"].startswith("RS-")
        assert r["max_mutations"] == 3
        assert m.id in r["prompt"]

    def test_second_start_conflicts(self, mcp_env):
        mcp_env["store"].create_memory("x")
        call(mcp_env, "refinement_start")
        r = call(mcp_env, "refinement_start", force=True)
        assert r["status"] == "error"
        assert "still active" in r["message"]

    def test_audited(self, mcp_env):
        mcp_env["store"].create_memory("x")
        r = call(mcp_env, "refinement_start")
        (rec,) = audit_records(mcp_env)
        assert rec["tool"] == "refinement_start"
        assert rec["sid"] == r["session_id"]
        assert rec["outcome"] == "ok"


# ---------------------------------------------------------------------------
# memory_refine
# ---------------------------------------------------------------------------


class TestRefine:
    def test_no_session(self, mcp_env):
        r = call(mcp_env, "memory_refine", action="search")
        assert r["type"] == "error"
        assert r["code"] == "no_session"

    def test_unknown_session(self, mcp_env):
        r = call(mcp_env, "memory_refine", action="search", session_id="RS-nope")
        assert "RS-nope" in r["error"]

    def test_full_session(self, mcp_env):
        store = mcp_env["store"]
        a = store.create_memory("User likes tea")
        b = store.create_memory("User likes tea a lot")
        call(mcp_env, "refinement_start")

        r = call(mcp_env, "memory_refine", action="search", query="tea")
        assert r["count"] == 2

        r = call(mcp_env, "memory_refine", action="consolidate",
                 ids=f"{a.id},{b.id}", content="User likes tea a lot, especially green tea")
        assert r["type"] == "consolidated"
        assert r["mutations_remaining"] == 2

        r = call(mcp_env, "memory_refine", action="complete", summary="Merged tea notes")
        assert r["type"] == "refinement_complete"

        r = call(mcp_env, "memory_refine", action="search")
        assert r["code"] == "terminated"

    def test_explicit_session_after_completion(self, mcp_env):
        mcp_env["store"].create_memory("x")
        sid = call(mcp_env, "refinement_start")["session_id"]
        call(mcp_env, "memory_refine", action="complete", summary="nothing")
        r = call(mcp_env, "memory_refine", action="search", session_id=sid)
        assert r["code"] == "terminated"

    def test_validation_error(self, mcp_env):
        mcp_env["store"].create_memory("x")
        call(mcp_env, "refinement_start")
        r = call(mcp_env, "memory_refine", action="explode")
        assert r["code"] == "validation"

    def test_breaker_rollback(self, mcp_env):
        store = mcp_env["store"]
        a = store.create_memory("a" * 400)
        b = store.create_memory("b" * 400)
        call(mcp_env, "refinement_start")
        r = call(mcp_env, "memory_refine", action="delete", id=a.id)
        assert r["type"] == "refinement_rolled_back"
        assert store.find_kept_core(a.id) is not None
        assert store.find_kept_core(b.id) is not None

    def test_calls_after_breaker_trip_terminated(self, mcp_env):
        store = mcp_env["store"]
        a = store.create_memory("a" * 400)
        b = store.create_memory("b" * 400)
        sid = call(mcp_env, "refinement_start")["session_id"]
        assert call(mcp_env, "memory_refine", action="delete", id=a.id)["type"] == "refinement_rolled_back"

        for payload in ({"action": "search"}, {"action": "delete", "id": b.id},
                        {"action": "complete", "summary": "done"}):
            r = call(mcp_env, "memory_refine", **payload)
            assert r["code"] == "terminated"
        assert store.find_kept_core(b.id) is not None
        assert audit_records(mcp_env)[-1]["sid"] == sid

    def test_status_idle_after_completion(self, mcp_env):
        mcp_env["store"].create_memory("x")
        call(mcp_env, "refinement_start")
        call(mcp_env, "memory_refine", action="complete", summary="done")
        assert call(mcp_env, "refinement_status")["status"] == "idle"

    def test_audit_carries_content_digest(self, mcp_env):
        m = mcp_env["store"].create_memory("User likes tea")
        call(mcp_env, "refinement_start")
        call(mcp_env, "memory_refine", action="update", id=m.id, content="User loves tea")
        rec = audit_records(mcp_env)[-1]
        assert rec["outcome"] == "updated"
        assert rec["d"]["content"]["preview"] == "User loves tea"
        assert rec["mc"] == 1
        assert rec["state"] == "active"


# ---------------------------------------------------------------------------
# refinement_ledger / refinement_status
# ---------------------------------------------------------------------------


class TestLedgerAndStatus:
    def test_ledger(self, mcp_env):
        m = mcp_env["store"].create_memory("v1")
        sid = call(mcp_env, "refinement_start")["session_id"]
        call(mcp_env, "memory_refine", action="update", id=m.id, content="v2")
        r = call(mcp_env, "refinement_ledger", session_id=sid)
        assert r["count"] == 1
        assert r["entries"][0]["snapshot"] == {"before": "v1", "after": "v2"}

    def test_ledger_unknown_session_empty(self, mcp_env):
        r = call(mcp_env, "refinement_ledger", session_id="RS-none")
        assert r["status"] == "ok"
        assert r["count"] == 0

    def test_status_idle(self, mcp_env):
        r = call(mcp_env, "refinement_status")
        assert r["status"] == "idle"
        assert r["store"]["core"] == 0

    def test_status_active(self, mcp_env):
        mcp_env["store"].create_memory("x" * 40)
        call(mcp_env, "refinement_start")
        r = call(mcp_env, "refinement_status")
        assert r["state"] == "active"
        assert r["pre_session_mass"] == 10
