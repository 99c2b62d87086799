"""Agent Memory — persistent, local memory for AI coding agents.

Direct Python API -- no MCP server required::

    from agent_memory import SQLiteStore, bridge
    with SQLiteStore() as store:
        store.record("experience", "pytest hangs", "add --timeout", "fixed", success=True)
        print(bridge.query(store, "pytest timeout"))

For MCP integration (stdio or HTTP transport), install with:
``pip install agent-memory[server]``
"""

__version__ = "1.1.0"

from agent_memory.sqlite_store import SQLiteStore, default_db_path
from agent_memory.types import (
    CompactExperience,
    Experience,
    ExperienceType,
    MemoryStats,
    Pattern,
    Preference,
    PruneResult,
    RecordOutcome,
    RecordResult,
    SearchUnavailableError,
)

__all__ = [
    "__version__",
    "SQLiteStore",
    "default_db_path",
    "CompactExperience",
    "Experience",
    "ExperienceType",
    "MemoryStats",
    "Pattern",
    "Preference",
    "PruneResult",
    "RecordOutcome",
    "RecordResult",
    "SearchUnavailableError",
]
