#!/usr/bin/env python3
"""Agent memory PostToolUse hook — auto-capture Write, Edit and Bash calls.

Repeated calls inside the dedup window only bump the existing row's counter.
Never prints and never fails the tool call.
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
        tool_name = payload.get("tool_name") or ""
        if not tool_name:
            return
        cwd = payload.get("cwd") or ""

        from agent_memory import bridge
        from agent_memory.sqlite_store import SQLiteStore, default_db_path

        if not default_db_path().exists():
            return

        with SQLiteStore() as store:
            bridge.auto_capture(
                store,
                tool_name,
                payload.get("tool_input") or {},
                project=Path(cwd).name if cwd else "",
            )
    except Exception as e:
        _log_hook_error("post_tool_use", e)


if __name__ == "__main__":
    main()
