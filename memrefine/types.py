"""
Refinement Data Model — Memories and Ledger Snapshots

Defines the memory record, the per-kind ledger snapshot variants, and the
ledger entry that carries them. Memories are never hard-deleted: a
discarded memory keeps its id and content so every mutation stays
reversible.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

MemoryKind = Literal["core", "journal"]
OperationKind = Literal["consolidate", "update", "delete", "protect"]

VALID_KINDS: set = {"core", "journal"}
VALID_OPERATIONS: set = {"consolidate", "update", "delete", "protect"}

# Rough chars-per-token ratio used for mass estimates
CHARS_PER_TOKEN = 4


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "MEM") -> str:
    """Generate a unique ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def token_estimate(text: str) -> int:
    """Approximate token count of a piece of text (ceil of chars / 4)."""
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

@dataclass
class Memory:
    """
    A unit of stored knowledge.

    Rules:
    - core memories are subject to refinement; journal memories are not.
    - constitutional memories can never be deleted or consolidated.
    - discarded_at is a soft-delete marker, cleared again by undiscard.
    """

    id: str = field(default_factory=lambda: _generate_id("MEM"))
    content: str = ""
    kind: MemoryKind = "core"
    constitutional: bool = False
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    discarded_at: Optional[str] = None

    def __post_init__(self):
        if self.kind not in VALID_KINDS:
            raise ValueError(f"Invalid memory kind: {self.kind!r}")

    @property
    def discarded(self) -> bool:
        return self.discarded_at is not None

    @property
    def token_estimate(self) -> int:
        return token_estimate(self.content)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Memory:
        """Deserialize from dict, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def as_ledger_line(self) -> Dict[str, Any]:
        """Compact view used in search results."""
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at,
            "tokens": self.token_estimate,
            "constitutional": self.constitutional,
        }


# ---------------------------------------------------------------------------
# Ledger snapshots (one variant per operation kind)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConsolidateSnapshot:
    """Originals that were merged, and the memory that replaced them."""

    merged: List[Dict[str, str]]  # [{id, content}]
    result: Dict[str, str]        # {id, content}

    def __post_init__(self):
        if not isinstance(self.merged, list) or not self.merged:
            raise ValueError("consolidate snapshot needs a non-empty merged list")
        for item in self.merged:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                raise ValueError(f"merged item without an id: {item!r}")
        if not isinstance(self.result, dict) or not isinstance(self.result.get("id"), str):
            raise ValueError(f"consolidate result without an id: {self.result!r}")

    @property
    def original_ids(self) -> List[str]:
        return [m["id"] for m in self.merged]

    @property
    def result_id(self) -> str:
        return self.result["id"]


@dataclass(frozen=True)
class UpdateSnapshot:
    """Content before and after an update."""

    before: str
    after: str

    def __post_init__(self):
        if not isinstance(self.before, str) or not isinstance(self.after, str):
            raise ValueError("update snapshot needs string before/after")


@dataclass(frozen=True)
class DeleteSnapshot:
    """Content of the memory at the time it was discarded."""

    content: str

    def __post_init__(self):
        if not isinstance(self.content, str):
            raise ValueError("delete snapshot needs string content")


@dataclass(frozen=True)
class ProtectSnapshot:
    """Constitutional flag before protect was applied."""

    was_constitutional: bool = False


Snapshot = Union[ConsolidateSnapshot, UpdateSnapshot, DeleteSnapshot, ProtectSnapshot]

_SNAPSHOT_TYPES: Dict[str, type] = {
    "consolidate": ConsolidateSnapshot,
    "update": UpdateSnapshot,
    "delete": DeleteSnapshot,
    "protect": ProtectSnapshot,
}


def snapshot_kind(snapshot: Snapshot) -> OperationKind:
    """Return the operation kind a snapshot variant belongs to."""
    for kind, cls in _SNAPSHOT_TYPES.items():
        if isinstance(snapshot, cls):
            return kind  # type: ignore[return-value]
    raise TypeError(f"Unknown snapshot type: {type(snapshot).__name__}")


def snapshot_to_json(snapshot: Snapshot) -> str:
    return json.dumps(asdict(snapshot), ensure_ascii=False)


def snapshot_from_json(kind: str, data: Optional[str]) -> Optional[Snapshot]:
    """
    Rebuild the snapshot variant for *kind* from its JSON form.

    Returns None when the payload is missing, does not match the variant's
    fields, or lacks the ids and texts a reversal needs; callers decide how
    to handle an unusable snapshot.
    """
    cls = _SNAPSHOT_TYPES.get(kind)
    if cls is None or not data:
        return None
    try:
        payload = json.loads(data)
        if not isinstance(payload, dict):
            return None
        return cls(**payload)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Ledger entry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerEntry:
    """One write-once record per successful mutating operation."""

    session_id: str
    kind: OperationKind
    target_ids: List[str]
    snapshot: Optional[Snapshot]
    id: str = field(default_factory=lambda: _generate_id("LED"))
    timestamp: str = field(default_factory=_now_iso)
    reversed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the audit log viewer."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "kind": self.kind,
            "target_ids": list(self.target_ids),
            "snapshot": asdict(self.snapshot) if self.snapshot is not None else None,
            "timestamp": self.timestamp,
            "reversed_at": self.reversed_at,
        }


# ---------------------------------------------------------------------------
# Memory Event (audit log entry)
# ---------------------------------------------------------------------------

@dataclass
class MemoryEvent:
    """Audit log entry for any refinement operation."""

    id: str = field(default_factory=lambda: _generate_id("EVT"))
    action: str = ""  # e.g. "refinement_update", "refinement_rollback"
    session_id: Optional[str] = None
    item_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
