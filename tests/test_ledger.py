"""
Tests for memrefine.ledger — append, read order, reversal stamps.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from memrefine.ledger import MutationLedger
from memrefine.store import MemoryStore
from memrefine.types import DeleteSnapshot, ProtectSnapshot, UpdateSnapshot


@pytest.fixture
def store():
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def ledger(store):
    return MutationLedger(store)


class TestRecord:
    def test_kind_follows_snapshot(self, ledger):
        entry = ledger.record("RS-1", ["MEM-a"], UpdateSnapshot(before="a", after="b"))
        assert entry.kind == "update"
        assert entry.session_id == "RS-1"

    def test_entries_oldest_first(self, ledger):
        ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        ledger.record("RS-1", ["B"], UpdateSnapshot(before="b", after="bb"))
        ledger.record("RS-1", ["C"], ProtectSnapshot())
        assert [e.kind for e in ledger.entries("RS-1")] == ["delete", "update", "protect"]

    def test_entries_newest_first(self, ledger):
        ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        ledger.record("RS-1", ["B"], UpdateSnapshot(before="b", after="bb"))
        entries = ledger.entries("RS-1", newest_first=True)
        assert [e.target_ids for e in entries] == [["B"], ["A"]]

    def test_sessions_are_isolated(self, ledger):
        ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        ledger.record("RS-2", ["B"], DeleteSnapshot(content="b"))
        assert len(ledger.entries("RS-1")) == 1
        assert ledger.entries("RS-3") == []

    def test_snapshot_roundtrips(self, ledger):
        ledger.record("RS-1", ["A"], UpdateSnapshot(before="old", after="new"))
        (entry,) = ledger.entries("RS-1")
        assert entry.snapshot == UpdateSnapshot(before="old", after="new")

    def test_rolled_back_with_mutation(self, store, ledger):
        with pytest.raises(RuntimeError):
            with store.transaction():
                ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
                raise RuntimeError("mutation failed")
        assert ledger.entries("RS-1") == []


class TestReversal:
    def test_mark_reversed(self, ledger):
        entry = ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        ledger.mark_reversed(entry.id)
        (reread,) = ledger.entries("RS-1")
        assert reread.reversed_at is not None

    def test_export(self, store, ledger):
        ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        exported = ledger.export("RS-1")
        assert exported[0]["kind"] == "delete"
        assert exported[0]["snapshot"] == {"content": "a"}
        assert store.ledger_sessions() == ["RS-1"]

    def test_unreadable_snapshot_is_none(self, store, ledger):
        entry = ledger.record("RS-1", ["A"], DeleteSnapshot(content="a"))
        store._conn.execute(
            "UPDATE refinement_ledger SET snapshot_json='{broken' WHERE id=?",
            (entry.id,),
        )
        (reread,) = ledger.entries("RS-1")
        assert reread.snapshot is None
