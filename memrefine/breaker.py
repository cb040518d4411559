"""
Circuit Breaker — retention ratio check.

A pure decision over (pre-session mass, current mass, threshold). The
current mass must be read from the live store after each mutation; this
module never estimates it.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class BreakerVerdict:
    """Outcome of one circuit-breaker evaluation."""

    tripped: bool
    ratio: Optional[float]
    pre_session_mass: Optional[int]
    current_mass: int
    threshold: float

    @property
    def reason(self) -> str:
        if self.ratio is None:
            return "no pre-session mass recorded; retention check skipped"
        verb = "below" if self.tripped else "within"
        return (
            f"core memory shrank to {self.ratio:.0%} of its pre-session size, "
            f"{verb} the {self.threshold:.0%} retention threshold"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tripped": self.tripped,
            "ratio": round(self.ratio, 4) if self.ratio is not None else None,
            "pre_session_mass": self.pre_session_mass,
            "current_mass": self.current_mass,
            "threshold": self.threshold,
        }


def evaluate(
    pre_session_mass: Optional[int],
    current_mass: int,
    threshold: float,
) -> BreakerVerdict:
    """
    Decide whether a session must be aborted.

    tripped = current_mass / pre_session_mass < threshold, evaluated only
    when pre_session_mass is a positive number.
    """
    if pre_session_mass is None or pre_session_mass <= 0:
        return BreakerVerdict(
            tripped=False, ratio=None, pre_session_mass=pre_session_mass,
            current_mass=current_mass, threshold=threshold,
        )
    ratio = current_mass / pre_session_mass
    return BreakerVerdict(
        tripped=ratio < threshold, ratio=ratio,
        pre_session_mass=pre_session_mass,
        current_mass=current_mass, threshold=threshold,
    )


def is_tripped(
    pre_session_mass: Optional[int], current_mass: int, threshold: float,
) -> bool:
    return evaluate(pre_session_mass, current_mass, threshold).tripped
