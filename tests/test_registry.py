"""
Tests for memrefine.registry — one active session per store.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from memrefine.errors import SessionConflictError
from memrefine.registry import SessionRegistry
from memrefine.store import MemoryStore


@pytest.fixture
def store():
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def registry():
    return SessionRegistry()


class TestRegistry:
    def test_open_and_get(self, registry, store):
        session = registry.open(store)
        assert registry.get(session.session_id) is session
        assert registry.active(store) is session

    def test_second_active_refused(self, registry, store):
        registry.open(store)
        with pytest.raises(SessionConflictError):
            registry.open(store)

    def test_open_after_complete(self, registry, store):
        first = registry.open(store)
        first.complete("done")
        second = registry.open(store)
        assert second.session_id != first.session_id
        assert registry.get(first.session_id) is first

    def test_separate_stores_independent(self, registry, store):
        other = MemoryStore(":memory:")
        registry.open(store)
        assert registry.open(other).store is other
        other.close()

    def test_no_active(self, registry, store):
        assert registry.active(store) is None

    def test_close_forgets(self, registry, store):
        session = registry.open(store, session_id="RS-fixed")
        registry.close("RS-fixed")
        assert registry.get(session.session_id) is None
        assert registry.active(store) is None

    def test_pre_session_mass_passed(self, registry, store):
        assert registry.open(store, pre_session_mass=42).pre_session_mass == 42


class TestSessionIds:
    def test_registered_id_refused(self, registry, store):
        first = registry.open(store, session_id="RS-1")
        first.complete("done")
        with pytest.raises(SessionConflictError):
            registry.open(store, session_id="RS-1")

    def test_id_in_ledger_refused(self, registry, store):
        a = store.create_memory("a" * 20)
        first = registry.open(store, session_id="RS-1")
        first.update(a.id, "b" * 20)
        first.complete("done")
        registry.close("RS-1")

        with pytest.raises(SessionConflictError):
            registry.open(store, session_id="RS-1")
        assert store.get_memory(a.id).content == "b" * 20

    def test_fresh_ids_unique(self, registry, store):
        first = registry.open(store)
        first.complete("done")
        assert registry.open(store).session_id != first.session_id


class TestRetention:
    def test_latest_includes_finished(self, registry, store):
        session = registry.open(store)
        session.complete("done")
        assert registry.active(store) is None
        assert registry.latest(store) is session

    def test_latest_per_store(self, registry, store):
        other = MemoryStore(":memory:")
        mine = registry.open(store)
        registry.open(other)
        assert registry.latest(store) is mine
        other.close()

    def test_finished_sessions_evicted(self, store):
        registry = SessionRegistry(max_finished=2)
        ids = []
        for _ in range(4):
            session = registry.open(store)
            ids.append(session.session_id)
            session.complete("done")
        registry.open(store)
        assert len(registry) == 3
        assert registry.get(ids[0]) is None
        assert registry.get(ids[1]) is None
        assert registry.get(ids[3]) is not None

    def test_active_session_never_evicted(self, store):
        registry = SessionRegistry(max_finished=1)
        active = registry.open(store)
        other = MemoryStore(":memory:")
        for _ in range(3):
            registry.open(other).complete("done")
        assert registry.active(store) is active
        other.close()
