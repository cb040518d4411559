"""
Refinement error taxonomy.

Errors are raised inside the engine and converted to typed results at the
session boundary, so the decision-maker can inspect every outcome.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Any, Dict


class RefinementError(Exception):
    """Base class for errors surfaced to the decision-maker as results."""

    code = "error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_result(self) -> Dict[str, Any]:
        """Typed error result (never raised across the session boundary)."""
        result: Dict[str, Any] = {
            "type": "error",
            "error": self.message,
            "code": self.code,
        }
        result.update(self.extra)
        return result


class ValidationError(RefinementError):
    """Missing or invalid parameters, or unknown action. Session stays active."""

    code = "validation"


class ConstraintError(RefinementError):
    """Target constitutional, not found, or too few ids to consolidate."""

    code = "constraint"


class CapExceededError(RefinementError):
    """Mutating call at or beyond the hard cap. No mutation is performed."""

    code = "cap_exceeded"


class TerminatedError(RefinementError):
    """Any call after the session left the active state."""

    code = "terminated"


class StorageError(RefinementError):
    """The store failed mid-operation; the operation was rolled back."""

    code = "storage"


class SessionConflictError(RuntimeError):
    """Another session is already active against the same store."""


class RollbackPartialWarning(UserWarning):
    """A ledger entry could not be reversed; rollback continued without it."""
