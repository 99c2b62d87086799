"""Agent Memory CLI — memory commands, maintenance, backups and the MCP server."""

import argparse
import json
import sys
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from agent_memory import bridge
from agent_memory.crypto import memory_home
from agent_memory.sqlite_store import SQLiteStore
from agent_memory.types import SearchUnavailableError


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=_json_default))


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


@contextmanager
def _open_store(args):
    store = SQLiteStore(getattr(args, "db", None))
    try:
        yield store
    except ValueError as e:
        _fail(str(e))
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Memory commands
# ---------------------------------------------------------------------------


def cmd_query(args):
    """Ranked full-text search."""
    query_text = " ".join(args.query_text).strip()
    if not query_text:
        _fail("usage: agent-memory query <search text>")

    with _open_store(args) as store:
        if not args.json:
            print(bridge.query(store, query_text, project=args.project, limit=args.limit))
            return
        try:
            results = store.search(query_text, project=args.project, limit=args.limit)
        except SearchUnavailableError as e:
            _fail(str(e))
        _print_json({"results": [asdict(r) for r in results], "count": len(results)})


def cmd_record(args):
    """Record an experience."""
    with _open_store(args) as store:
        print(bridge.record_experience(
            store,
            args.context,
            args.action,
            args.result,
            success=not args.failure,
            tags=args.tags,
            project=args.project,
            topic_key=args.topic,
            exp_type=args.type,
        ))


def cmd_show(args):
    """Show one experience in full."""
    with _open_store(args) as store:
        if not args.json:
            print(bridge.get_experience(store, args.id))
            return
        exp = store.get_by_id(args.id)
        if exp is None:
            _fail(f"experience #{args.id} not found")
        _print_json(asdict(exp))


def cmd_timeline(args):
    """Show the +-1 hour neighbourhood of an experience."""
    with _open_store(args) as store:
        if not args.json:
            print(bridge.timeline(store, args.id))
            return
        _print_json([asdict(r) for r in store.get_timeline(args.id)])


def cmd_prefs(args):
    """List preferences (merged with a project's when --project is given)."""
    with _open_store(args) as store:
        if not args.json:
            print(bridge.preferences(store, project=args.project))
            return
        prefs = store.get_merged_preferences(args.project) if args.project else store.get_global_preferences()
        out = []
        for p in prefs:
            row = asdict(p)
            row["effective_confidence"] = p.effective_confidence()
            row["decay_factor"] = p.decay_factor()
            out.append(row)
        _print_json(out)


def cmd_learn(args):
    """Affirm a preference."""
    with _open_store(args) as store:
        print(bridge.learn_preference(store, args.key, args.value, scope=args.scope, source=args.source))


def cmd_patterns(args):
    """List the most frequent patterns."""
    with _open_store(args) as store:
        if not args.json:
            print(bridge.patterns(store, limit=args.limit))
            return
        _print_json([asdict(p) for p in store.get_patterns(args.limit)])


def cmd_stats(args):
    """Show memory counters."""
    with _open_store(args) as store:
        if args.json:
            _print_json(asdict(store.stats()))
            return
        print(bridge.memory_stats(store))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def cmd_forget(args):
    """Soft-delete experiences by id, tag and/or project."""
    args.tag = (args.tag or "").strip() or None
    args.project = (args.project or "").strip() or None
    if args.id is None and args.tag is None and args.project is None:
        _fail("provide at least one of --id, --tag or --project")
    with _open_store(args) as store:
        print(bridge.forget(store, experience_id=args.id, tag=args.tag, project=args.project, exact_tag=args.exact_tag))


def cmd_prune(args):
    """Prune old experiences and/or low-confidence preferences."""
    if args.older_than_days is None and args.min_confidence is None:
        _fail("provide --older-than-days and/or --min-confidence")
    with _open_store(args) as store:
        print(bridge.prune(
            store,
            older_than_days=args.older_than_days,
            only_failures=args.only_failures,
            min_confidence=args.min_confidence,
        ))


def cmd_export(args):
    """Export all memory to a JSON file (encrypted unless AGENT_MEMORY_ENCRYPT=0)."""
    target = args.path
    if not target:
        backups_dir = memory_home() / "backups"
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        target = str(backups_dir / f"agent-memory-{timestamp}.json")
    with _open_store(args) as store:
        print(bridge.export_memories(store, target))


def cmd_import(args):
    """Import an export file, replacing (default) or merging into current memory."""
    if not Path(args.path).exists():
        _fail(f"{args.path} does not exist")
    with _open_store(args) as store:
        print(bridge.import_memories(store, args.path, clear_existing=not args.merge))


def cmd_validate(args):
    """Validate database integrity: SQLite PRAGMA + FTS5 agreement."""
    with _open_store(args) as store:
        report = store.validate()
        if not report["ok"] and args.repair and report["fts_available"]:
            print("Index out of sync, rebuilding...")
            store.rebuild_index()
            report = store.validate()

    if args.json:
        _print_json(report)
    else:
        print(f"SQLite integrity:   {report['integrity']}")
        print(f"Active experiences: {report['active_experiences']}")
        print(f"FTS5 entries:       {report['indexed'] if report['fts_available'] else 'unavailable'}")
        print("OK" if report["ok"] else "FAILED")
    sys.exit(0 if report["ok"] else 1)


def cmd_checkpoint(args):
    """Force a WAL checkpoint."""
    with _open_store(args) as store:
        busy, log_pages, checkpointed = store.checkpoint(args.mode)
    print(f"Checkpoint ({args.mode.upper()}): {checkpointed}/{log_pages} pages, busy={busy}")


def cmd_serve(args):
    """Run the MCP server (stdio by default)."""
    import asyncio

    if args.http:
        from agent_memory.server.http_server import get_or_create_api_key, run_http

        api_key = None if args.no_auth else get_or_create_api_key()
        asyncio.run(run_http(args.host, args.port, api_key, db_path=args.db))
        return

    from agent_memory.server.mcp_server import main as stdio_main

    asyncio.run(stdio_main(db_path=args.db))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-memory",
        description="Agent Memory — persistent local memory for AI coding agents",
    )
    parser.add_argument("--db", default=None, help="Database path (default: $AGENT_MEMORY_DB or ~/.agent-memory/memory.db)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- Memory commands ---
    query_parser = subparsers.add_parser("query", help="Ranked full-text search over experiences")
    query_parser.add_argument("query_text", nargs="+", help="Search text (FTS5 syntax)")
    query_parser.add_argument("--project", default=None, help="Restrict to this project + global experiences")
    query_parser.add_argument("--limit", type=int, default=5, help="Max results (default: 5)")
    query_parser.add_argument("--json", action="store_true", help="Output as JSON")

    record_parser = subparsers.add_parser("record", help="Record an experience")
    record_parser.add_argument("context", help="What was happening")
    record_parser.add_argument("action", help="What was done")
    record_parser.add_argument("result", help="What happened")
    record_parser.add_argument("--failure", action="store_true", help="Mark the experience as a failure")
    record_parser.add_argument("--tags", default="", help="Comma-separated tags")
    record_parser.add_argument("--project", default="", help="Project (default: global)")
    record_parser.add_argument("--topic", default=None, help="Topic key; replaces the existing experience for the topic")
    record_parser.add_argument(
        "--type",
        default="experience",
        choices=["experience", "correction", "insight", "auto_capture", "session_summary"],
        help="Experience type (default: experience)",
    )

    show_parser = subparsers.add_parser("show", help="Show one experience in full")
    show_parser.add_argument("id", type=int)
    show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    timeline_parser = subparsers.add_parser("timeline", help="Show experiences within an hour of one")
    timeline_parser.add_argument("id", type=int)
    timeline_parser.add_argument("--json", action="store_true", help="Output as JSON")

    prefs_parser = subparsers.add_parser("prefs", help="List preferences")
    prefs_parser.add_argument("--project", default=None, help="Merge in this project's preferences")
    prefs_parser.add_argument("--json", action="store_true", help="Output as JSON")

    learn_parser = subparsers.add_parser("learn", help="Affirm a preference")
    learn_parser.add_argument("key")
    learn_parser.add_argument("value")
    learn_parser.add_argument("--scope", default="global", help="'global' (default) or a project name")
    learn_parser.add_argument("--source", default="observed", help="Where the preference came from")

    patterns_parser = subparsers.add_parser("patterns", help="List the most frequent patterns")
    patterns_parser.add_argument("--limit", type=int, default=10, help="Max patterns (default: 10)")
    patterns_parser.add_argument("--json", action="store_true", help="Output as JSON")

    stats_parser = subparsers.add_parser("stats", help="Show memory counters")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # --- Maintenance ---
    forget_parser = subparsers.add_parser("forget", help="Soft-delete experiences")
    forget_parser.add_argument("--id", type=int, default=None)
    forget_parser.add_argument("--tag", default=None, help="Tag text (substring match)")
    forget_parser.add_argument("--exact-tag", action="store_true", help="Match --tag exactly")
    forget_parser.add_argument("--project", default=None)

    prune_parser = subparsers.add_parser("prune", help="Prune old experiences / weak preferences")
    prune_parser.add_argument("--older-than-days", type=float, default=None)
    prune_parser.add_argument("--only-failures", action="store_true")
    prune_parser.add_argument("--min-confidence", type=float, default=None)

    export_parser = subparsers.add_parser("export", help="Export memory to a JSON file")
    export_parser.add_argument("path", nargs="?", default=None, help="Target file (default: ~/.agent-memory/backups/)")

    import_parser = subparsers.add_parser("import", help="Import an export file")
    import_parser.add_argument("path")
    import_parser.add_argument("--merge", action="store_true", help="Merge instead of replacing current memory")

    validate_parser = subparsers.add_parser("validate", help="Validate database integrity (SQLite + FTS5)")
    validate_parser.add_argument("--repair", action="store_true", help="Rebuild the FTS5 index if it is out of sync")
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON")

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Force a WAL checkpoint")
    checkpoint_parser.add_argument("--mode", default="TRUNCATE", help="PASSIVE, FULL, RESTART or TRUNCATE (default)")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server (stdio mode)")
    serve_parser.add_argument("--http", action="store_true", help="Serve over Streamable HTTP instead of stdio")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8765)
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable the x-api-key check (HTTP only)")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "query": cmd_query,
        "record": cmd_record,
        "show": cmd_show,
        "timeline": cmd_timeline,
        "prefs": cmd_prefs,
        "learn": cmd_learn,
        "patterns": cmd_patterns,
        "stats": cmd_stats,
        "forget": cmd_forget,
        "prune": cmd_prune,
        "export": cmd_export,
        "import": cmd_import,
        "validate": cmd_validate,
        "checkpoint": cmd_checkpoint,
        "serve": cmd_serve,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
