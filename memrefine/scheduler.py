"""
Session startup — whether to refine, consent, and session construction.

The decision-maker is any callable taking a prompt and returning text
(e.g. a chat-model wrapper). Scheduling itself (cron, job queue) lives
outside this package; it calls start_session() when a slot comes up.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from memrefine.config import RefineConfig
from memrefine.prompts import build_consent_prompt, build_refinement_prompt
from memrefine.registry import SessionRegistry
from memrefine.session import RefinementSession
from memrefine.store import MemoryStore

logger = logging.getLogger(__name__)

AskFn = Callable[[str], str]

_YES = re.compile(r"^\W*yes\b", re.IGNORECASE)


def needs_refinement(
    store: MemoryStore,
    config: Optional[RefineConfig] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    True when core memories exist and either no refinement ever ran, the
    last one is older than the interval, or core mass is over budget.
    """
    cfg = config or RefineConfig()
    if not store.search_core("", limit=1):
        return False
    if store.core_mass() > cfg.scheduler.core_token_budget:
        return True
    last = store.get_meta("last_refinement_at")
    if last is None:
        return True
    now = now or datetime.now(timezone.utc)
    try:
        last_at = datetime.fromisoformat(last)
    except ValueError:
        logger.warning("[scheduler] unreadable last_refinement_at %r", last)
        return True
    return now - last_at >= timedelta(hours=cfg.scheduler.interval_hours)


def request_consent(ask: AskFn, prompt: str) -> bool:
    """Ask once; consent only if the answer's first word is YES."""
    answer = (ask(prompt) or "").strip()
    consented = bool(_YES.match(answer))
    logger.info(
        "[scheduler] consent: %s (%s)",
        "YES" if consented else "NO", answer[:200],
    )
    return consented


def start_session(
    store: MemoryStore,
    config: Optional[RefineConfig] = None,
    *,
    consent: Optional[AskFn] = None,
    registry: Optional[SessionRegistry] = None,
    force: bool = False,
) -> Optional[RefinementSession]:
    """
    Open a session with pre_session_mass taken from the live store.

    Returns None when refinement is not needed (unless *force*) or the
    decision-maker declines. Raises SessionConflictError if *registry*
    already holds an active session for this store.
    """
    cfg = config or RefineConfig()
    if not force and not needs_refinement(store, cfg):
        logger.info("[scheduler] refinement not needed")
        return None

    memories = store.search_core("")
    usage = store.core_mass()
    budget = cfg.scheduler.core_token_budget

    if consent is not None:
        prompt = build_consent_prompt(memories, usage, budget)
        if not request_consent(consent, prompt):
            return None

    if registry is not None:
        session = registry.open(store, cfg.session, pre_session_mass=usage)
    else:
        session = RefinementSession(store, cfg.session, pre_session_mass=usage)
    store.log_event(
        "refinement_start", session_id=session.session_id,
        details={
            "pre_session_mass": usage,
            "threshold": session.threshold,
            "max_mutations": session.max_mutations,
            "core_memories": len(memories),
        },
    )
    logger.info(
        "[scheduler] session %s started: %d core memories, %d tokens",
        session.session_id, len(memories), usage,
    )
    return session


def session_prompt(
    session: RefinementSession,
    config: Optional[RefineConfig] = None,
    guidance: Optional[str] = None,
) -> str:
    """Instructions for the decision-maker driving *session*."""
    cfg = config or RefineConfig()
    store = session.store
    return build_refinement_prompt(
        store.search_core(""),
        store.core_mass(),
        cfg.scheduler.core_token_budget,
        session.max_mutations,
        guidance=guidance,
    )
