"""
memrefine CLI — Operator Commands for the Refinement Store

Commands:
    memrefine init   [PATH]                       — scaffold store + config + .gitignore
    memrefine add    "content" [--journal] [-c]   — insert a memory (or read stdin)
    memrefine list   [--kind K] [--all]           — list memories → stdout
    memrefine mass                                — core mass and store metrics
    memrefine ledger   <session_id>               — mutation ledger of a session
    memrefine rollback <session_id>               — reverse a session by hand
    memrefine protect   <id> / unprotect <id>    — set or clear the constitutional flag
    memrefine discard   <id> / restore <id>      — soft-delete (never constitutional) or undo
    memrefine events [--session S] [--action A]   — audit events, newest first
    memrefine serve  [--threshold T]              — start MCP server (foreground)

Environment variables:
    MEMREFINE_DB             Path to SQLite database (default: .memory/refine.db)
    MEMREFINE_THRESHOLD      Retention threshold for served sessions (default: 0.6)
    MEMREFINE_MAX_MUTATIONS  Hard cap per served session (default: 10)

Precedence (invariant):
    CLI --flag  >  MEMREFINE_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, empty input, unknown id)
    2  Internal failure (unexpected exception, I/O error)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > MEMREFINE_DB > .memory/refine.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("MEMREFINE_DB", ".memory/refine.db")


def _open_store(db_path: str):
    """Open a MemoryStore. Creates the DB and parent dirs if needed."""
    from memrefine.store import MemoryStore
    return MemoryStore(db_path=db_path)


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize a refinement workspace directory."""
    from memrefine.config import RefineConfig

    target = Path(args.path).resolve()
    db_path = Path(args.db).resolve() if getattr(args, "db", None) else target / "refine.db"

    if db_path.exists() and not args.force:
        # Idempotent: print paths, exit 0
        _info(f"Workspace exists: {target}")
        _info(f"  Database:  {db_path}")
        print(f'export MEMREFINE_DB="{db_path}"')
        return

    if args.force and db_path.exists():
        db_path.unlink()
        for suffix in ("-wal", "-shm"):
            p = db_path.parent / (db_path.name + suffix)
            if p.exists():
                p.unlink()

    target.mkdir(parents=True, exist_ok=True)
    store = _open_store(str(db_path))
    store.close()

    config_path = target / "config.json"
    if not config_path.exists():
        cfg = RefineConfig()
        cfg.store.db_path = str(db_path)
        data = {
            "store": vars(cfg.store),
            "session": vars(cfg.session),
            "scheduler": vars(cfg.scheduler),
        }
        config_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*.db\n*.db-wal\n*.db-shm\n", encoding="utf-8")

    _info(f"Refinement workspace initialized: {target}")
    _info(f"  Database:  {db_path}")
    _info(f"  Config:    {config_path}")
    print(f'export MEMREFINE_DB="{db_path}"')


# ===========================================================================
# Command: add
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Insert one memory from the argument or from stdin."""
    content = args.content
    if content is None or content == "-":
        if sys.stdin.isatty():
            _warn("No content given. Pass it as an argument or pipe it on stdin.")
            sys.exit(1)
        content = sys.stdin.read()
    content = content.strip()
    if not content:
        _warn("Empty content, nothing stored.")
        sys.exit(1)

    kind = "journal" if args.journal else "core"
    store = _open_store(_resolve_db(args))
    memory = store.create_memory(content, kind=kind, constitutional=args.constitutional)
    store.log_event("memory_add", item_id=memory.id, details={"kind": kind})
    store.close()

    if getattr(args, "json", False):
        _print_json(memory.to_dict())
    else:
        print(memory.id)
    _info(f"Stored {kind} memory ({memory.token_estimate} tokens)")


# ===========================================================================
# Command: list
# ===========================================================================


def cmd_list(args: argparse.Namespace) -> None:
    """List memories, oldest first."""
    store = _open_store(_resolve_db(args))
    memories = store.list_memories(
        kind=args.kind, include_discarded=args.all, limit=args.n,
    )
    store.close()

    if getattr(args, "json", False):
        _print_json([m.to_dict() for m in memories])
        return
    if not memories:
        _info("No memories.")
        return
    for m in memories:
        flags = ""
        if m.constitutional:
            flags += " [CONSTITUTIONAL]"
        if m.discarded:
            flags += " [DISCARDED]"
        preview = m.content.replace("\n", " ")[:100]
        print(f"  [{m.kind.upper()}] {m.id}  ~{m.token_estimate:>5d} tok{flags}  {preview}")


# ===========================================================================
# Command: mass
# ===========================================================================


def cmd_mass(args: argparse.Namespace) -> None:
    """Show core mass and store statistics."""
    store = _open_store(_resolve_db(args))
    stats = store.stats()
    store.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
        return
    print("Refinement Store")
    print("=" * 40)
    print(f"  Core mass:       {stats['core_mass']} tokens")
    print(f"  Core memories:   {stats['core']}")
    print(f"  Constitutional:  {stats['constitutional']}")
    print(f"  Journal entries: {stats['journal']}")
    print(f"  Discarded:       {stats['discarded']}")
    print(f"  Ledger entries:  {stats['ledger_entries']}")
    print(f"  Last refinement: {stats['last_refinement_at'] or 'never'}")


# ===========================================================================
# Command: ledger
# ===========================================================================


def cmd_ledger(args: argparse.Namespace) -> None:
    """Display the mutation ledger of one session (or list sessions)."""
    from memrefine.ledger import MutationLedger

    store = _open_store(_resolve_db(args))
    if not args.session_id:
        sessions = store.ledger_sessions()
        store.close()
        if getattr(args, "json", False):
            _print_json(sessions)
        else:
            for sid in sessions:
                print(sid)
        return

    entries = MutationLedger(store).export(args.session_id)
    store.close()
    if not entries:
        _warn(f"No ledger entries for session {args.session_id}")
        sys.exit(1)

    if getattr(args, "json", False):
        _print_json(entries)
        return
    print(f"Ledger for {args.session_id}: {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}\n")
    for e in entries:
        mark = " (reversed)" if e["reversed_at"] else ""
        print(f"  {e['timestamp'][:19]}  {e['kind']:12s} {', '.join(e['target_ids'])}{mark}")
        snap = e["snapshot"] or {}
        if e["kind"] == "update":
            print(f"    before: {snap.get('before', '')[:100]}")
            print(f"    after:  {snap.get('after', '')[:100]}")
        elif e["kind"] == "delete":
            print(f"    content: {snap.get('content', '')[:100]}")
        elif e["kind"] == "consolidate":
            result = snap.get("result") or {}
            print(f"    into {result.get('id', '?')}: {result.get('content', '')[:100]}")


# ===========================================================================
# Command: rollback
# ===========================================================================


def cmd_rollback(args: argparse.Namespace) -> None:
    """Reverse every unreversed ledger entry of a session."""
    from memrefine.rollback import RollbackEngine

    store = _open_store(_resolve_db(args))
    if not store.select_ledger_rows(args.session_id):
        _warn(f"No ledger entries for session {args.session_id}")
        store.close()
        sys.exit(1)

    try:
        report = RollbackEngine(store).rollback(args.session_id)
    except Exception as e:
        _warn(f"Rollback failed: {e}")
        store.close()
        sys.exit(2)
    store.close()

    if getattr(args, "json", False):
        data = report.to_dict()
        data["status"] = "ok"
        data["warnings"] = [str(w) for w in report.warnings]
        _print_json(data)
        return
    print(f"Rolled back {args.session_id}:")
    print(f"  Reversed: {len(report.reversed)}")
    print(f"  Skipped:  {len(report.skipped)}")
    print(f"  Core mass now: {report.post_mass} tokens")
    for w in report.warnings:
        _warn(f"  warning: {w}")


# ===========================================================================
# Commands: protect / unprotect / discard / restore  (operator actions)
# ===========================================================================


def _get_or_exit(store, memory_id: str):
    memory = store.get_memory(memory_id)
    if memory is None:
        _warn(f"Memory {memory_id} not found")
        store.close()
        sys.exit(1)
    return memory


def _report(args: argparse.Namespace, memory, message: str) -> None:
    if getattr(args, "json", False):
        data = memory.to_dict()
        data["status"] = "ok"
        _print_json(data)
    else:
        print(message)


def cmd_protect(args: argparse.Namespace) -> None:
    """Set (protect) or clear (unprotect) the constitutional flag."""
    store = _open_store(_resolve_db(args))
    _get_or_exit(store, args.id)
    action = "memory_protected" if args.constitutional else "memory_unprotected"
    with store.transaction():
        memory = store.set_constitutional(args.id, args.constitutional)
        store.log_event(action, item_id=args.id)
    store.close()
    _report(args, memory, f"{'Protected' if args.constitutional else 'Unprotected'} {args.id}")


def cmd_discard(args: argparse.Namespace) -> None:
    """Soft-delete a memory outside any refinement session."""
    store = _open_store(_resolve_db(args))
    memory = _get_or_exit(store, args.id)
    if memory.constitutional:
        _warn(f"Cannot discard constitutional memory {args.id}; unprotect it first")
        store.close()
        sys.exit(1)
    if memory.discarded:
        store.close()
        _info(f"{args.id} is already discarded")
        _report(args, memory, f"Discarded {args.id}")
        return
    with store.transaction():
        memory = store.discard(args.id)
        store.log_event("memory_discarded", item_id=args.id)
    store.close()
    _report(args, memory, f"Discarded {args.id}")


def cmd_restore(args: argparse.Namespace) -> None:
    """Clear the soft-delete marker of a memory."""
    store = _open_store(_resolve_db(args))
    _get_or_exit(store, args.id)
    with store.transaction():
        memory = store.undiscard(args.id)
        store.log_event("memory_restored", item_id=args.id)
    store.close()
    _report(args, memory, f"Restored {args.id}")


# ===========================================================================
# Command: events
# ===========================================================================


def cmd_events(args: argparse.Namespace) -> None:
    """Show audit events, newest first."""
    store = _open_store(_resolve_db(args))
    events = store.read_events(session_id=args.session, action=args.action, limit=args.n)
    store.close()

    if getattr(args, "json", False):
        _print_json([e.to_dict() for e in events])
        return
    if not events:
        _info("No events.")
        return
    for e in events:
        target = f" {e.item_id}" if e.item_id else ""
        session = f" [{e.session_id}]" if e.session_id else ""
        print(f"  {e.timestamp[:19]}  {e.action}{target}{session}")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the memrefine MCP server in foreground."""
    try:
        from memrefine.mcp.server import create_server, build_parser as mcp_parser
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args)]
    if args.threshold is not None:
        server_argv.extend(["--threshold", str(args.threshold)])
    if args.max_mutations is not None:
        server_argv.extend(["--max-mutations", str(args.max_mutations)])
    if args.config:
        server_argv.extend(["--config", args.config])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    _info(f"memrefine MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """CLI parser: memrefine <command> [args]."""
    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level.
    _db_default = _env_str("MEMREFINE_DB", ".memory/refine.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="memrefine",
        description="memrefine — bounded, reversible refinement of core memory",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Initialize a refinement workspace")
    p_init.add_argument(
        "path", nargs="?", default=".memory",
        help="Workspace directory (default: .memory)",
    )
    p_init.add_argument("--force", action="store_true", help="Reinitialize existing workspace")
    p_init.set_defaults(func=cmd_init)

    # -- add ---------------------------------------------------------------
    p_add = sub.add_parser("add", parents=[_common], help="Add a memory")
    p_add.add_argument("content", nargs="?", default=None, help="Memory text ('-' or omitted: stdin)")
    p_add.add_argument("--journal", action="store_true", help="Store as journal (not refined)")
    p_add.add_argument(
        "--constitutional", "-c", action="store_true",
        help="Mark as constitutional (never deleted or consolidated)",
    )
    p_add.set_defaults(func=cmd_add)

    # -- list --------------------------------------------------------------
    p_list = sub.add_parser("list", parents=[_common], help="List memories")
    p_list.add_argument("--kind", choices=["core", "journal"], default=None, help="Filter by kind")
    p_list.add_argument("--all", action="store_true", help="Include discarded memories")
    p_list.add_argument("-n", type=int, default=1000, help="Max rows (default: 1000)")
    p_list.set_defaults(func=cmd_list)

    # -- mass --------------------------------------------------------------
    p_mass = sub.add_parser("mass", parents=[_common], help="Core mass and store statistics")
    p_mass.set_defaults(func=cmd_mass)

    # -- ledger ------------------------------------------------------------
    p_ledger = sub.add_parser("ledger", parents=[_common], help="Show a session's mutation ledger")
    p_ledger.add_argument(
        "session_id", nargs="?", default=None,
        help="Session ID (omitted: list sessions with ledger entries)",
    )
    p_ledger.set_defaults(func=cmd_ledger)

    # -- rollback ----------------------------------------------------------
    p_rb = sub.add_parser("rollback", parents=[_common], help="Reverse a refinement session")
    p_rb.add_argument("session_id", help="Session ID")
    p_rb.set_defaults(func=cmd_rollback)

    # -- protect / unprotect / discard / restore ---------------------------
    p_prot = sub.add_parser("protect", parents=[_common], help="Mark a memory constitutional")
    p_prot.add_argument("id", help="Memory ID")
    p_prot.set_defaults(func=cmd_protect, constitutional=True)

    p_unprot = sub.add_parser("unprotect", parents=[_common],
                              help="Clear a memory's constitutional flag")
    p_unprot.add_argument("id", help="Memory ID")
    p_unprot.set_defaults(func=cmd_protect, constitutional=False)

    p_disc = sub.add_parser("discard", parents=[_common],
                            help="Soft-delete a memory (refused for constitutional ones)")
    p_disc.add_argument("id", help="Memory ID")
    p_disc.set_defaults(func=cmd_discard)

    p_rest = sub.add_parser("restore", parents=[_common], help="Undo a soft delete")
    p_rest.add_argument("id", help="Memory ID")
    p_rest.set_defaults(func=cmd_restore)

    # -- events ------------------------------------------------------------
    p_events = sub.add_parser("events", parents=[_common], help="Show audit events")
    p_events.add_argument("--session", default=None, help="Filter by session ID")
    p_events.add_argument("--action", default=None, help="Filter by action (e.g. refinement_delete)")
    p_events.add_argument("-n", type=int, default=50, help="Max events (default: 50)")
    p_events.set_defaults(func=cmd_events)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument(
        "--threshold", type=float, default=None,
        help="Retention threshold (default: MEMREFINE_THRESHOLD or 0.6)",
    )
    p_serve.add_argument(
        "--max-mutations", type=int, default=None,
        help="Hard cap per session (default: MEMREFINE_MAX_MUTATIONS or 10)",
    )
    p_serve.add_argument("--config", default=None, help="JSON config file")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main() -> None:
    """CLI entry point: memrefine <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # e.g. memrefine list | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
