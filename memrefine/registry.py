"""
Session Registry — at most one active refinement session per store.

In-memory only: resets on process restart. Finished sessions stay
addressable by id, so their ledger can still be displayed and late calls
still get a terminated answer, until the retention cap evicts the oldest.

Session ids are single-use: an id already held by the registry or already
present in the store's ledger is refused, so a session never shares its
ledger slice with an earlier one.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Optional

from memrefine.config import SessionConfig
from memrefine.errors import SessionConflictError
from memrefine.session import RefinementSession
from memrefine.store import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_FINISHED = 64


class SessionRegistry:
    """Tracks sessions by id and refuses a second active one per store."""

    def __init__(self, max_finished: int = DEFAULT_MAX_FINISHED) -> None:
        """
        Args:
            max_finished: Terminated sessions kept addressable; older ones
                are evicted (their ledger stays in the store).
        """
        self._sessions: "OrderedDict[str, RefinementSession]" = OrderedDict()
        self._max_finished = max(1, max_finished)
        self._lock = threading.Lock()

    def open(
        self,
        store: MemoryStore,
        config: Optional[SessionConfig] = None,
        *,
        pre_session_mass: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> RefinementSession:
        """Create and register a session.

        Raises SessionConflictError while another session on *store* is
        active, or when *session_id* has been used before.
        """
        with self._lock:
            current = self._active_for(store)
            if current is not None:
                raise SessionConflictError(
                    f"Session {current.session_id} is still active on this store"
                )
            if session_id is not None and (
                session_id in self._sessions or session_id in store.ledger_sessions()
            ):
                raise SessionConflictError(
                    f"Session id {session_id} has already been used"
                )
            session = RefinementSession(
                store, config,
                session_id=session_id,
                pre_session_mass=pre_session_mass,
            )
            self._sessions[session.session_id] = session
            self._evict_finished()
            return session

    def get(self, session_id: str) -> Optional[RefinementSession]:
        return self._sessions.get(session_id)

    def active(self, store: MemoryStore) -> Optional[RefinementSession]:
        """The session currently active on *store*, if any."""
        with self._lock:
            return self._active_for(store)

    def latest(self, store: MemoryStore) -> Optional[RefinementSession]:
        """The most recently opened session on *store*, whatever its state."""
        with self._lock:
            for session in reversed(self._sessions.values()):
                if session.store is store:
                    return session
            return None

    def close(self, session_id: str) -> None:
        """Forget a session entirely."""
        with self._lock:
            self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def _active_for(self, store: MemoryStore) -> Optional[RefinementSession]:
        for session in self._sessions.values():
            if session.store is store and session.is_active:
                return session
        return None

    def _evict_finished(self) -> None:
        finished = [sid for sid, s in self._sessions.items() if not s.is_active]
        for sid in finished[:-self._max_finished]:
            del self._sessions[sid]
            logger.debug("[registry] evicted finished session %s", sid)
