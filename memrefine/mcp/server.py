"""
memrefine MCP Server — Memory Refinement Sessions for LLM Agents

Standalone MCP server exposing refinement sessions via the Model Context
Protocol. The connected model is the decision-maker; the server enforces
the hard cap, the retention circuit breaker, and rollback.

Usage:
    python -m memrefine.mcp.server --db /path/to/refine.db
    python -m memrefine.mcp.server --threshold 0.7 --max-mutations 5

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Memory refinement for your own core memories (4 tools).\n"
    "\n"
    "START:  refinement_start opens a session and lists your core memories.\n"
    "REFINE: memory_refine with action=search|consolidate|update|delete|protect.\n"
    "DONE:   memory_refine with action=complete and a short summary.\n"
    "\n"
    "Rules:\n"
    "- This is de-duplication, not compression; doing nothing is fine\n"
    "- Constitutional memories cannot be deleted or consolidated\n"
    "- At most N mutating operations per session (consolidate/update/delete)\n"
    "- Shrinking core memory below the retention threshold rolls back the\n"
    "  whole session and ends it\n"
)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            pass
    return default


def _env_float(name: str, default: float) -> float:
    """Read a float from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            pass
    return default


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the refinement MCP server."""
    p = argparse.ArgumentParser(
        prog="memrefine-mcp",
        description="memrefine MCP Server — bounded memory refinement sessions",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("MEMREFINE_DB", ".memory/refine.db"),
        help="SQLite database path (default: .memory/refine.db or $MEMREFINE_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("MEMREFINE_CONFIG"),
        help="JSON config file (default: $MEMREFINE_CONFIG, else compiled defaults)",
    )
    p.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Retention threshold in [0, 1] (default: 0.6 or $MEMREFINE_THRESHOLD)",
    )
    p.add_argument(
        "--max-mutations",
        type=int,
        default=None,
        help="Hard cap on mutating operations per session (default: 10 or $MEMREFINE_MAX_MUTATIONS)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def resolve_config(args: argparse.Namespace):
    """Config file, then MEMREFINE_* env vars, then CLI flags."""
    from memrefine.config import load_config

    config = load_config(args.config, strict=True)
    config.store.db_path = args.db
    config.session.retention_threshold = _env_float(
        "MEMREFINE_THRESHOLD", config.session.retention_threshold,
    )
    config.session.max_mutations = _env_int(
        "MEMREFINE_MAX_MUTATIONS", config.session.max_mutations,
    )
    if args.threshold is not None:
        config.session.retention_threshold = args.threshold
    if args.max_mutations is not None:
        config.session.max_mutations = args.max_mutations
    return config


def create_server(args=None):
    """
    Create and configure the FastMCP server with refinement tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from memrefine.config import ConfigError
    from memrefine.mcp.audit import AuditLogger
    from memrefine.mcp.tools import register_refinement_tools
    from memrefine.registry import SessionRegistry
    from memrefine.store import MemoryStore

    if args is None:
        args = build_parser().parse_args()

    config = resolve_config(args)
    errors = config.validate()
    if errors:
        raise ConfigError(f"Config validation failed: {'; '.join(errors)}")

    store = MemoryStore(
        db_path=config.store.db_path,
        wal_mode=config.store.wal_mode,
    )

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="memrefine",
        instructions=_MCP_INSTRUCTIONS,
    )

    register_refinement_tools(
        mcp, store, config,
        registry=SessionRegistry(),
        audit=audit,
    )

    logger.info(
        "memrefine MCP server ready: db=%s, threshold=%.2f, max_mutations=%d",
        config.store.db_path,
        config.session.retention_threshold,
        config.session.max_mutations,
    )

    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
