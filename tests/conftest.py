"""Agent memory test configuration."""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the agent_memory package and hooks are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent / "hooks"))


@pytest.fixture
def tmp_memory_dir(tmp_path):
    """Create a temporary memory home for testing."""
    memory_dir = tmp_path / ".agent-memory"
    memory_dir.mkdir()
    os.environ["AGENT_MEMORY_HOME"] = str(memory_dir)
    old_db = os.environ.pop("AGENT_MEMORY_DB", None)
    # Default: disable encryption in tests for deterministic output
    old_encrypt = os.environ.get("AGENT_MEMORY_ENCRYPT")
    os.environ["AGENT_MEMORY_ENCRYPT"] = "0"
    yield memory_dir
    os.environ.pop("AGENT_MEMORY_HOME", None)
    if old_db is not None:
        os.environ["AGENT_MEMORY_DB"] = old_db
    if old_encrypt is not None:
        os.environ["AGENT_MEMORY_ENCRYPT"] = old_encrypt
    else:
        os.environ.pop("AGENT_MEMORY_ENCRYPT", None)
    from agent_memory.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def tmp_memory_dir_encrypted(tmp_memory_dir):
    """Temporary memory home with encryption enabled."""
    os.environ["AGENT_MEMORY_ENCRYPT"] = "1"
    from agent_memory.crypto import reset_crypto_state
    reset_crypto_state()
    yield tmp_memory_dir
    reset_crypto_state()


@pytest.fixture
def store(tmp_memory_dir):
    """Create a fresh SQLiteStore at the default location of the temp home."""
    from agent_memory.sqlite_store import SQLiteStore
    s = SQLiteStore(db_path=tmp_memory_dir / "memory.db")
    yield s
    s.close()


def iso_ago(**delta) -> str:
    """Stored-timestamp string for now minus *delta* (e.g. days=40)."""
    return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat(timespec="microseconds")


def backdate(store, table, row_id, column, **delta):
    """Rewrite a timestamp column directly, the way rows age in real use."""
    store._conn.execute(
        f"UPDATE {table} SET {column} = ? WHERE id = ?", (iso_ago(**delta), row_id)
    )
    store._conn.commit()
