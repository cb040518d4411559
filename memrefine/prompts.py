"""
Prompt builders for the consent check and the refinement session.

The decision-maker reads these; the engine never interprets its prose.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import List, Optional

from memrefine.types import Memory

DEFAULT_REFINEMENT_GUIDANCE = (
    "De-duplicate exact duplicates. Tighten phrasing within individual "
    "memories if possible. Do not summarize or compress distinct memories. "
    "Constitutional memories are never touched."
)


def format_memory_ledger(memories: List[Memory]) -> str:
    """One line per memory: id, date, token estimate, flag, content."""
    lines = []
    for m in memories:
        flag = " [CONSTITUTIONAL]" if m.constitutional else ""
        lines.append(
            f"- {m.id} ({m.created_at[:10]}, ~{m.token_estimate} tokens){flag}: {m.content}"
        )
    return "\n".join(lines)


def _status_block(memories: List[Memory], usage: int, budget: int) -> str:
    if usage > budget:
        budget_line = f"Over budget by: {usage - budget} tokens"
    else:
        budget_line = "Within budget"
    return (
        "## Current Status\n"
        f"- Core memories: {len(memories)}\n"
        f"- Token usage: {usage} tokens\n"
        f"- Token budget: {budget} tokens\n"
        f"- {budget_line}"
    )


def build_consent_prompt(
    memories: List[Memory],
    usage: int,
    budget: int,
    preamble: Optional[str] = None,
) -> str:
    """Ask the decision-maker whether a session may start (YES/NO first word)."""
    parts = [preamble.strip()] if preamble else []
    parts.append(
        "# Memory Refinement Request\n\n"
        "A scheduled memory refinement session is about to run. Before it "
        "begins, you are being asked whether you consent to this session.\n\n"
        f"{_status_block(memories, usage, budget)}\n\n"
        "Memory refinement will review your core memories to de-duplicate "
        "entries and tighten phrasing. Constitutional memories are never "
        "touched. Completing with zero operations is a valid outcome.\n\n"
        "Do you want to run memory refinement now? Reply with **YES** or "
        "**NO** as the first word of your response."
    )
    return "\n\n".join(parts)


def build_refinement_prompt(
    memories: List[Memory],
    usage: int,
    budget: int,
    max_mutations: int,
    guidance: Optional[str] = None,
    preamble: Optional[str] = None,
) -> str:
    """Session instructions plus the full core memory ledger."""
    parts = [preamble.strip()] if preamble else []
    parts.append(
        "# Memory Refinement Session\n\n"
        "You are reviewing your own core memories. This is de-duplication, "
        "not compression.\n\n"
        f"{guidance or DEFAULT_REFINEMENT_GUIDANCE}\n\n"
        f"{_status_block(memories, usage, budget)}\n"
        f"- Mutating operations allowed this session: {max_mutations}\n\n"
        "## Your Core Memory Ledger\n"
        f"{format_memory_ledger(memories)}\n\n"
        "Use the refine tool (search, consolidate, update, delete, protect). "
        "When done, call complete with a brief summary. Doing nothing is fine."
    )
    return "\n\n".join(parts)
