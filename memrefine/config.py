"""
Refinement Engine Configuration

Configuration dataclasses for memrefine: store, session safety limits, and
scheduling.  Includes load_config() for reading a JSON config file with
silent fallback to compiled defaults.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Hard cap on mutating operations per session
MAX_MUTATIONS = 10

# Never let a single session shrink core memory below this retention ratio
DEFAULT_RETENTION_THRESHOLD = 0.6


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (
            typ.__name__ if isinstance(typ, type)
            else "|".join(t.__name__ for t in typ)
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".memory/refine.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        return errors


@dataclass
class SessionConfig:
    """Per-session safety limits."""
    max_mutations: int = MAX_MUTATIONS
    retention_threshold: float = DEFAULT_RETENTION_THRESHOLD
    max_content_length: int = 10_000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "session.max_mutations",
                     self.max_mutations, 1, 1000, int)
        _check_range(errors, "session.retention_threshold",
                     self.retention_threshold, 0.0, 1.0, (int, float))
        _check_range(errors, "session.max_content_length",
                     self.max_content_length, 100, 1_000_000, int)
        return errors


@dataclass
class SchedulerConfig:
    """When a refinement session is worth starting."""
    interval_hours: int = 168
    core_token_budget: int = 5000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "scheduler.interval_hours",
                     self.interval_hours, 1, 8760, int)
        _check_range(errors, "scheduler.core_token_budget",
                     self.core_token_budget, 1, 10_000_000, int)
        return errors


@dataclass
class RefineConfig:
    """Top-level memrefine configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RefineConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "session" in d:
            kwargs["session"] = SessionConfig(**d["session"])
        if "scheduler" in d:
            kwargs["scheduler"] = SchedulerConfig(**d["scheduler"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.session.validate())
        errors.extend(self.scheduler.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> RefineConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigError on invalid config values.

    Returns:
        RefineConfig with values from file or defaults.

    Raises:
        ConfigError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = RefineConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = RefineConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = RefineConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
