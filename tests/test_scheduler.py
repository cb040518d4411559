"""
Tests for memrefine.scheduler and memrefine.prompts — when to refine,
consent, session start, and the decision-maker prompts.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from datetime import datetime, timedelta, timezone

import pytest

from memrefine.config import RefineConfig, SchedulerConfig
from memrefine.errors import SessionConflictError
from memrefine.prompts import (
    build_consent_prompt,
    build_refinement_prompt,
    format_memory_ledger,
)
from memrefine.registry import SessionRegistry
from memrefine.scheduler import (
    needs_refinement,
    request_consent,
    session_prompt,
    start_session,
)
from memrefine.store import MemoryStore


@pytest.fixture
def store():
    s = MemoryStore(":memory:")
    yield s
    s.close()


NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class TestNeedsRefinement:
    def test_empty_store(self, store):
        assert needs_refinement(store) is False

    def test_never_refined(self, store):
        store.create_memory("x")
        assert needs_refinement(store, now=NOW) is True

    def test_recent_refinement(self, store):
        store.create_memory("x")
        store.set_meta("last_refinement_at", (NOW - timedelta(hours=1)).isoformat())
        assert needs_refinement(store, now=NOW) is False

    def test_interval_elapsed(self, store):
        store.create_memory("x")
        store.set_meta("last_refinement_at", (NOW - timedelta(days=8)).isoformat())
        assert needs_refinement(store, now=NOW) is True

    def test_over_budget(self, store):
        store.create_memory("x" * 400)
        store.set_meta("last_refinement_at", NOW.isoformat())
        cfg = RefineConfig(scheduler=SchedulerConfig(core_token_budget=50))
        assert needs_refinement(store, cfg, now=NOW) is True

    def test_unreadable_timestamp(self, store):
        store.create_memory("x")
        store.set_meta("last_refinement_at", "last tuesday")
        assert needs_refinement(store, now=NOW) is True


class TestConsent:
    @pytest.mark.parametrize("answer,expected", [
        ("YES", True),
        ("**Yes** - let's tidy up", True),
        ("yes.", True),
        ("No, not now", False),
        ("yesterday was fine", False),
        ("", False),
    ])
    def test_first_word(self, answer, expected):
        assert request_consent(lambda prompt: answer, "prompt") is expected

    def test_prompt_passed(self):
        seen = []
        request_consent(lambda p: seen.append(p) or "no", "the prompt")
        assert seen == ["the prompt"]


class TestStartSession:
    def test_not_needed(self, store):
        assert start_session(store) is None

    def test_force(self, store):
        store.create_memory("x" * 40)
        store.set_meta("last_refinement_at", datetime.now(timezone.utc).isoformat())
        session = start_session(store, force=True)
        assert session is not None
        assert session.pre_session_mass == 10

    def test_declined(self, store):
        store.create_memory("x")
        assert start_session(store, consent=lambda p: "NO") is None

    def test_consented(self, store):
        store.create_memory("x")
        session = start_session(store, consent=lambda p: "YES")
        assert session.is_active

    def test_start_event(self, store):
        store.create_memory("x" * 8)
        session = start_session(store)
        (event,) = store.read_events(action="refinement_start")
        assert event.session_id == session.session_id
        assert event.details["pre_session_mass"] == 2

    def test_registry_conflict(self, store):
        store.create_memory("x")
        registry = SessionRegistry()
        start_session(store, registry=registry)
        with pytest.raises(SessionConflictError):
            start_session(store, registry=registry)


class TestPrompts:
    def test_ledger_lines(self, store):
        a = store.create_memory("User's name is Ada", constitutional=True,
                                created_at="2025-01-02T10:00:00+00:00")
        line = format_memory_ledger([a])
        assert line == f"- {a.id} (2025-01-02, ~5 tokens) [CONSTITUTIONAL]: User's name is Ada"

    def test_consent_prompt(self, store):
        m = store.create_memory("x")
        text = build_consent_prompt([m], usage=6000, budget=5000)
        assert "Over budget by: 1000 tokens" in text
        assert "YES" in text and "NO" in text

    def test_refinement_prompt(self, store):
        m = store.create_memory("likes tea")
        text = build_refinement_prompt([m], 3, 5000, max_mutations=10, preamble="You are Ada.")
        assert text.startswith("You are Ada.")
        assert "# Memory Refinement Session" in text
        assert "## Your Core Memory Ledger" in text
        assert m.id in text
        assert "Mutating operations allowed this session: 10" in text

    def test_session_prompt(self, store):
        store.create_memory("likes tea")
        session = start_session(store)
        text = session_prompt(session, guidance="Only merge exact duplicates.")
        assert "Only merge exact duplicates." in text
        assert "Within budget" in text

    def test_session_prompt_lists_every_memory(self, store):
        with store.transaction():
            memories = [store.create_memory(f"fact {i}") for i in range(1001)]
        session = start_session(store, force=True)
        text = session_prompt(session)
        assert memories[0].id in text
        assert memories[-1].id in text
