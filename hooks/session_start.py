#!/usr/bin/env python3
"""Agent memory SessionStart hook — inject preferences and recent context.

Reads the hook payload (JSON) from stdin and prints a JSON object whose
``additionalContext`` is the memory digest for the project in ``cwd``.
"""
import json
import os
import sys
import traceback
from datetime import datetime
from pathlib import Path


def _log_hook_error(hook_name, error):
    try:
        from agent_memory.crypto import memory_home

        log_path = memory_home() / "hooks.log"
        log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        timestamp = datetime.now().isoformat(timespec="seconds")
        tb = traceback.format_exc()
        data = f"[{timestamp}] {hook_name}: {error}\n{tb}\n"
        fd = os.open(str(log_path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        try:
            os.write(fd, data.encode("utf-8"))
        finally:
            os.close(fd)
    except Exception:
        pass


def main():
    try:
        payload = json.loads(sys.stdin.read() or "{}")
        cwd = payload.get("cwd") or ""
        project = Path(cwd).name if cwd else ""
        source = payload.get("source") or "startup"

        from agent_memory import bridge
        from agent_memory.sqlite_store import SQLiteStore, default_db_path

        if not default_db_path().exists():
            print("{}")
            return

        with SQLiteStore() as store:
            context = bridge.session_context(store, project, source=source)
        print(json.dumps({"additionalContext": context}))
    except Exception as e:
        _log_hook_error("session_start", e)
        print("{}")


if __name__ == "__main__":
    main()
