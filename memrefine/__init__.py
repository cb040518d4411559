"""
memrefine — bounded, reversible refinement of an agent's core memory.

The agent curates its own memories through a small tool surface; the engine
enforces a hard cap on mutations, a retention circuit breaker, and a ledger
from which every session can be rolled back.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.1.0"

from memrefine.types import Memory, MemoryEvent, LedgerEntry
from memrefine.store import MemoryStore, SCHEMA_VERSION
from memrefine.config import RefineConfig, SessionConfig
from memrefine.errors import RefinementError, SessionConflictError
from memrefine.session import RefinementSession, SessionState
from memrefine.registry import SessionRegistry
from memrefine.rollback import RollbackEngine

__all__ = [
    "__version__",
    "Memory",
    "MemoryEvent",
    "LedgerEntry",
    "MemoryStore",
    "RefineConfig",
    "SessionConfig",
    "RefinementError",
    "SessionConflictError",
    "RefinementSession",
    "SessionState",
    "SessionRegistry",
    "RollbackEngine",
    "SCHEMA_VERSION",
]
