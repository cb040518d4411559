"""
Refinement commands — one tagged dataclass per action.

The transport payload ({"action": ..., plus loose fields}) is parsed once
into a command carrying only the fields its action needs; the session then
dispatches on the command type.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from memrefine.errors import ValidationError

ACTIONS: Tuple[str, ...] = (
    "search", "consolidate", "update", "delete", "protect", "complete",
)


@dataclass(frozen=True)
class Search:
    query: str = ""


@dataclass(frozen=True)
class Consolidate:
    ids: Tuple[str, ...]
    content: str


@dataclass(frozen=True)
class Update:
    id: str
    content: str


@dataclass(frozen=True)
class Delete:
    id: str


@dataclass(frozen=True)
class Protect:
    id: str


@dataclass(frozen=True)
class Complete:
    summary: str


Command = Union[Search, Consolidate, Update, Delete, Protect, Complete]

# Counted toward the hard cap and followed by a circuit-breaker check
MUTATING = (Consolidate, Update, Delete)


def is_mutating(command: Command) -> bool:
    return isinstance(command, MUTATING)


def action_name(command: Command) -> str:
    return type(command).__name__.lower()


def _text(payload: Dict[str, Any], name: str, action: str) -> str:
    """Required non-blank string field, stripped."""
    value = payload.get(name)
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required for {action}")
    return str(value).strip()


def _content(payload: Dict[str, Any], action: str, max_length: int) -> str:
    content = _text(payload, "content", action)
    if len(content) > max_length:
        raise ValidationError(
            f"content is {len(content)} characters; limit is {max_length}"
        )
    return content


def _split_ids(raw: Any) -> List[str]:
    """Accept a list of ids or a comma-separated string; drop blanks and repeats."""
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        parts = [str(p) for p in raw]
    else:
        raise ValidationError("ids must be a list or a comma-separated string")
    ids: List[str] = []
    for part in parts:
        part = part.strip()
        if part and part not in ids:
            ids.append(part)
    return ids


def parse_command(
    payload: Dict[str, Any], max_content_length: int = 10_000,
) -> Command:
    """
    Build a command from a transport payload.

    Raises:
        ValidationError: unknown action or missing/invalid field.
    """
    action = str(payload.get("action") or "").strip().lower()
    if action not in ACTIONS:
        raise ValidationError(
            f"Invalid action {payload.get('action')!r}",
            allowed_actions=list(ACTIONS),
        )

    if action == "search":
        query: Optional[Any] = payload.get("query")
        return Search(query="" if query is None else str(query))
    if action == "consolidate":
        if payload.get("ids") in (None, "", []):
            raise ValidationError("ids is required for consolidate")
        content = _content(payload, action, max_content_length)
        return Consolidate(ids=tuple(_split_ids(payload.get("ids"))), content=content)
    if action == "update":
        memory_id = _text(payload, "id", action)
        return Update(id=memory_id, content=_content(payload, action, max_content_length))
    if action == "delete":
        return Delete(id=_text(payload, "id", action))
    if action == "protect":
        return Protect(id=_text(payload, "id", action))
    return Complete(summary=_text(payload, "summary", action))
