"""
Agent Memory MCP Handlers -- Maps tool names to async handler functions.

``build_handlers(store)`` binds every handler to one SQLiteStore. Each handler
validates its arguments, delegates to agent_memory.bridge, and returns an
MCP-compatible response dict.
"""

import logging
from typing import Awaitable, Callable, Dict, Optional

from agent_memory import bridge
from agent_memory.sqlite_store import SQLiteStore

logger = logging.getLogger("agent_memory.server.handlers")

Handler = Callable[[dict], Awaitable[dict]]


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _optional_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("id must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError("id must be an integer") from None


def _optional_float(name: str, value) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number") from None


def _text(arguments: dict, name: str) -> str:
    value = arguments.get(name)
    return value.strip() if isinstance(value, str) else ""


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def build_handlers(store: SQLiteStore) -> Dict[str, Handler]:
    """Return the tool-name -> handler registry bound to *store*."""

    # ------------------------------------------------------------------------
    # Write tools
    # ------------------------------------------------------------------------

    async def handle_record_experience(arguments: dict) -> dict:
        context = _text(arguments, "context")
        action = _text(arguments, "action")
        result = _text(arguments, "result")
        if not context or not action or not result:
            return mcp_error("context, action and result are required")
        if not isinstance(arguments.get("success"), bool):
            return mcp_error("success must be true or false")
        try:
            text = bridge.record_experience(
                store,
                context,
                action,
                result,
                success=arguments["success"],
                tags=arguments.get("tags") or "",
                project=_text(arguments, "project"),
                topic_key=_text(arguments, "topic_key") or None,
            )
            return mcp_response(text)
        except ValueError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("record_experience failed: %s", e)
            return mcp_error(f"Failed to record experience: {e}")

    async def handle_record_correction(arguments: dict) -> dict:
        what_i_did = _text(arguments, "what_i_did")
        what_user_wanted = _text(arguments, "what_user_wanted")
        lesson = _text(arguments, "lesson")
        if not what_i_did or not what_user_wanted or not lesson:
            return mcp_error("what_i_did, what_user_wanted and lesson are required")
        try:
            text = bridge.record_correction(
                store,
                what_i_did,
                what_user_wanted,
                lesson,
                tags=arguments.get("tags") or "",
                project=_text(arguments, "project"),
            )
            return mcp_response(text)
        except ValueError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("record_correction failed: %s", e)
            return mcp_error(f"Failed to record correction: {e}")

    async def handle_learn_preference(arguments: dict) -> dict:
        key = _text(arguments, "key")
        value = _text(arguments, "value")
        if not key or not value:
            return mcp_error("key and value are required")
        try:
            text = bridge.learn_preference(
                store,
                key,
                value,
                scope=_text(arguments, "scope") or None,
                source=_text(arguments, "source") or None,
            )
            return mcp_response(text)
        except ValueError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("learn_preference failed: %s", e)
            return mcp_error(f"Failed to save preference: {e}")

    # ------------------------------------------------------------------------
    # Read tools
    # ------------------------------------------------------------------------

    async def handle_query_memory(arguments: dict) -> dict:
        query_text = _text(arguments, "query")
        if not query_text:
            return mcp_error("query is required")
        limit = _clamp_int(arguments.get("limit", 5), default=5, max_val=100)
        try:
            return mcp_response(
                bridge.query(store, query_text, project=_text(arguments, "project") or None, limit=limit)
            )
        except Exception as e:
            logger.error("query_memory failed: %s", e)
            return mcp_error(f"Query failed: {e}")

    async def handle_get_experience(arguments: dict) -> dict:
        try:
            experience_id = _optional_int(arguments.get("id"))
        except ValueError as e:
            return mcp_error(str(e))
        if experience_id is None:
            return mcp_error("id is required")
        try:
            return mcp_response(bridge.get_experience(store, experience_id))
        except Exception as e:
            logger.error("get_experience failed: %s", e)
            return mcp_error(f"Failed to get experience: {e}")

    async def handle_get_timeline(arguments: dict) -> dict:
        try:
            experience_id = _optional_int(arguments.get("id"))
        except ValueError as e:
            return mcp_error(str(e))
        if experience_id is None:
            return mcp_error("id is required")
        try:
            return mcp_response(bridge.timeline(store, experience_id))
        except Exception as e:
            logger.error("get_timeline failed: %s", e)
            return mcp_error(f"Failed to get timeline: {e}")

    async def handle_get_patterns(arguments: dict) -> dict:
        limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=100)
        try:
            return mcp_response(bridge.patterns(store, limit=limit))
        except Exception as e:
            logger.error("get_patterns failed: %s", e)
            return mcp_error(f"Failed to get patterns: {e}")

    async def handle_get_preferences(arguments: dict) -> dict:
        try:
            return mcp_response(bridge.preferences(store, project=_text(arguments, "project") or None))
        except Exception as e:
            logger.error("get_preferences failed: %s", e)
            return mcp_error(f"Failed to get preferences: {e}")

    async def handle_memory_stats(arguments: dict) -> dict:
        try:
            return mcp_response(bridge.memory_stats(store))
        except Exception as e:
            logger.error("memory_stats failed: %s", e)
            return mcp_error(f"Failed to get stats: {e}")

    # ------------------------------------------------------------------------
    # Maintenance tools
    # ------------------------------------------------------------------------

    async def handle_forget_memory(arguments: dict) -> dict:
        try:
            experience_id = _optional_int(arguments.get("id"))
        except ValueError as e:
            return mcp_error(str(e))
        tag = _text(arguments, "tag") or None
        project = _text(arguments, "project") or None
        if experience_id is None and not tag and not project:
            return mcp_error("you must provide at least one of: id, tag, or project.")
        try:
            text = bridge.forget(
                store,
                experience_id=experience_id,
                tag=tag,
                project=project,
                exact_tag=bool(arguments.get("exact_tag", False)),
            )
            return mcp_response(text)
        except ValueError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("forget_memory failed: %s", e)
            return mcp_error(f"Failed to forget: {e}")

    async def handle_prune_memory(arguments: dict) -> dict:
        try:
            older_than_days = _optional_float("older_than_days", arguments.get("older_than_days"))
            min_confidence = _optional_float("min_confidence", arguments.get("min_confidence"))
        except ValueError as e:
            return mcp_error(str(e))
        if older_than_days is None and min_confidence is None:
            return mcp_error("you must provide at least older_than_days or min_confidence.")
        try:
            text = bridge.prune(
                store,
                older_than_days=older_than_days,
                only_failures=bool(arguments.get("only_failures", False)),
                min_confidence=min_confidence,
            )
            return mcp_response(text)
        except ValueError as e:
            return mcp_error(str(e))
        except Exception as e:
            logger.error("prune_memory failed: %s", e)
            return mcp_error(f"Failed to prune: {e}")

    return {
        "record_experience": handle_record_experience,
        "record_correction": handle_record_correction,
        "learn_preference": handle_learn_preference,
        "query_memory": handle_query_memory,
        "get_experience": handle_get_experience,
        "get_timeline": handle_get_timeline,
        "get_patterns": handle_get_patterns,
        "get_preferences": handle_get_preferences,
        "memory_stats": handle_memory_stats,
        "forget_memory": handle_forget_memory,
        "prune_memory": handle_prune_memory,
    }


# Tools that mutate the store; they count against the write rate limit.
WRITE_TOOLS = frozenset({
    "record_experience",
    "record_correction",
    "learn_preference",
    "forget_memory",
    "prune_memory",
})
