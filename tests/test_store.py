"""
Tests for memrefine.store — MemoryStore CRUD, search, mass, transactions.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from memrefine.store import MemoryStore, SCHEMA_VERSION


@pytest.fixture
def store():
    """In-memory store."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Disk-backed store in a nested directory."""
    s = MemoryStore(db_path=str(tmp_path / "nested" / "refine.db"))
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_schema_version(self, store):
        assert store.get_meta("schema_version") == str(SCHEMA_VERSION)

    def test_disk_store_creates_parent(self, disk_store, tmp_path):
        assert (tmp_path / "nested" / "refine.db").exists()

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "r.db")
        s = MemoryStore(path)
        m = s.create_memory("persistent")
        s.close()
        s2 = MemoryStore(path)
        assert s2.get_memory(m.id).content == "persistent"
        s2.close()


# ---------------------------------------------------------------------------
# Memory writes
# ---------------------------------------------------------------------------


class TestWrites:
    def test_create_and_get(self, store):
        m = store.create_memory("User's name is Ada", constitutional=True)
        got = store.get_memory(m.id)
        assert got.content == "User's name is Ada"
        assert got.constitutional is True

    def test_create_with_created_at(self, store):
        m = store.create_memory("old", created_at="2024-01-01T00:00:00+00:00")
        assert store.get_memory(m.id).created_at == "2024-01-01T00:00:00+00:00"

    def test_update_content(self, store):
        m = store.create_memory("before")
        assert store.update_content(m.id, "after").content == "after"

    def test_patch_unknown_returns_none(self, store):
        assert store.update_content("MEM-missing", "x") is None
        assert store.discard("MEM-missing") is None
        assert store.undiscard("MEM-missing") is None

    def test_discard_is_soft(self, store):
        m = store.create_memory("gone soon")
        store.discard(m.id)
        got = store.get_memory(m.id)
        assert got is not None
        assert got.discarded
        assert store.find_kept_core(m.id) is None

    def test_undiscard(self, store):
        m = store.create_memory("back again")
        store.discard(m.id)
        store.undiscard(m.id)
        assert store.find_kept_core(m.id) is not None

    def test_find_kept_core_ignores_journal(self, store):
        j = store.create_memory("journal line", kind="journal")
        assert store.find_kept_core(j.id) is None


# ---------------------------------------------------------------------------
# Search and mass
# ---------------------------------------------------------------------------


class TestSearch:
    def test_substring_case_insensitive(self, store):
        store.create_memory("User likes Python")
        store.create_memory("User likes tea")
        results = store.search_core("python")
        assert [m.content for m in results] == ["User likes Python"]

    def test_empty_query_lists_all_core(self, store):
        store.create_memory("a")
        store.create_memory("b")
        store.create_memory("j", kind="journal")
        assert len(store.search_core("")) == 2

    def test_excludes_discarded(self, store):
        m = store.create_memory("hidden")
        store.discard(m.id)
        assert store.search_core("hidden") == []

    def test_wildcards_are_literal(self, store):
        store.create_memory("100% sure")
        store.create_memory("100 percent")
        assert len(store.search_core("100%")) == 1
        assert store.search_core("_") == []

    def test_no_implicit_cap(self, store):
        with store.transaction():
            for i in range(1205):
                store.create_memory(f"fact {i}")
        assert len(store.search_core("")) == 1205
        assert len(store.search_core("fact")) == 1205

    def test_explicit_limit(self, store):
        for i in range(3):
            store.create_memory(f"fact {i}")
        assert len(store.search_core("", limit=2)) == 2

    def test_list_memories_filters(self, store):
        m = store.create_memory("core one")
        store.create_memory("journal one", kind="journal")
        store.discard(m.id)
        assert len(store.list_memories()) == 1
        assert len(store.list_memories(include_discarded=True)) == 2
        assert store.list_memories(kind="core") == []


class TestMass:
    def test_sum_of_kept_core(self, store):
        store.create_memory("x" * 400)
        store.create_memory("y" * 40)
        store.create_memory("z" * 4000, kind="journal")
        assert store.core_mass() == 110

    def test_discard_reduces_mass(self, store):
        m = store.create_memory("x" * 400)
        store.discard(m.id)
        assert store.core_mass() == 0


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_memory("never committed")
                raise RuntimeError("boom")
        assert store.search_core("") == []

    def test_nested_joins_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.create_memory("inner")
                store.create_memory("outer")
                raise RuntimeError("boom")
        assert store.search_core("") == []

    def test_commit(self, store):
        with store.transaction():
            store.create_memory("kept")
        assert len(store.search_core("")) == 1


# ---------------------------------------------------------------------------
# Events, meta, stats
# ---------------------------------------------------------------------------


class TestEvents:
    def test_log_and_read_newest_first(self, store):
        store.log_event("refinement_start", session_id="RS-1")
        store.log_event("refinement_delete", session_id="RS-1", item_id="MEM-1",
                        details={"before": "x"})
        events = store.read_events(session_id="RS-1")
        assert [e.action for e in events] == ["refinement_delete", "refinement_start"]
        assert events[0].details == {"before": "x"}

    def test_filter_by_action(self, store):
        store.log_event("refinement_start", session_id="RS-1")
        store.log_event("refinement_start", session_id="RS-2")
        store.log_event("refinement_complete", session_id="RS-2")
        assert len(store.read_events(action="refinement_start")) == 2


class TestStats:
    def test_counts(self, store):
        a = store.create_memory("a" * 8, constitutional=True)
        b = store.create_memory("b" * 8)
        store.create_memory("journal", kind="journal")
        store.discard(b.id)
        stats = store.stats()
        assert stats["core"] == 1
        assert stats["journal"] == 1
        assert stats["discarded"] == 1
        assert stats["constitutional"] == 1
        assert stats["core_mass"] == 2
        assert stats["last_refinement_at"] is None
        assert a.id

    def test_meta_roundtrip(self, store):
        store.set_meta("last_refinement_at", "2025-01-01T00:00:00+00:00")
        assert store.get_meta("last_refinement_at") == "2025-01-01T00:00:00+00:00"
