"""Agent memory MCP server tests — schemas, handlers, dispatch and rate limits."""
import collections

import pytest

from agent_memory.server import mcp_server
from agent_memory.server.handlers import WRITE_TOOLS, build_handlers, mcp_error, mcp_response
from agent_memory.server.tool_schemas import TOOL_SCHEMAS
from conftest import backdate


@pytest.fixture
def handlers(store):
    return build_handlers(store)


def _text(result):
    return result["content"][0]["text"]


async def _record(handlers, **overrides):
    args = {
        "context": "npm install fails with EACCES",
        "action": "use a node version manager",
        "result": "installs cleanly",
        "success": True,
        "tags": "node,npm",
    }
    args.update(overrides)
    result = await handlers["record_experience"](args)
    assert not result.get("isError"), result
    return result


# ============================================================================
# Schema / Registry Tests
# ============================================================================

def test_all_tools_have_handlers(handlers):
    """Every tool in TOOL_SCHEMAS should have a handler and vice versa."""
    assert {s["name"] for s in TOOL_SCHEMAS} == set(handlers)
    assert len(TOOL_SCHEMAS) == 11


def test_tool_schemas_valid():
    """All tool schemas should have required fields."""
    for schema in TOOL_SCHEMAS:
        assert schema["description"]
        assert schema["inputSchema"]["type"] == "object"
        for required in schema["inputSchema"].get("required", []):
            assert required in schema["inputSchema"]["properties"]


def test_write_tools_are_registered(handlers):
    assert WRITE_TOOLS <= set(handlers)


def test_response_helpers():
    assert mcp_response("ok") == {"content": [{"type": "text", "text": "ok"}]}
    err = mcp_error("bad")
    assert err["isError"] is True
    assert err["content"][0]["text"] == "Error: bad"


# ============================================================================
# Handler: record_experience
# ============================================================================

@pytest.mark.asyncio
async def test_record_experience(handlers, store):
    result = await _record(handlers)
    text = _text(result)
    assert text.startswith("Experience saved (id: 1).")
    assert "Memory: 1 experiences" in text
    assert store.get_by_id(1).tags == "node,npm"


@pytest.mark.asyncio
async def test_record_experience_dedup_and_upsert(handlers):
    await _record(handlers)
    assert "deduplicated (existing updated)" in _text(await _record(handlers))
    await _record(handlers, topic_key="setup:node")
    assert "upserted (topic updated)" in _text(await _record(handlers, result="different", topic_key="setup:node"))


@pytest.mark.asyncio
async def test_record_experience_missing_fields(handlers, store):
    result = await handlers["record_experience"]({"context": "x", "action": "", "result": "y", "success": True})
    assert result["isError"]
    assert _text(result) == "Error: context, action and result are required"
    assert store.stats().experiences == 0


@pytest.mark.asyncio
async def test_record_experience_success_must_be_bool(handlers):
    result = await handlers["record_experience"]({"context": "x", "action": "y", "result": "z", "success": "yes"})
    assert result["isError"]
    assert "success must be true or false" in _text(result)


@pytest.mark.asyncio
async def test_record_experience_oversized(handlers, monkeypatch):
    from agent_memory.sqlite_store import SQLiteStore
    monkeypatch.setattr(SQLiteStore, "_MAX_CONTENT_SIZE", 5)
    result = await handlers["record_experience"]({"context": "too long", "action": "y", "result": "z", "success": True})
    assert result["isError"]
    assert "exceeds limit" in _text(result)


# ============================================================================
# Handler: record_correction
# ============================================================================

@pytest.mark.asyncio
async def test_record_correction(handlers, store):
    result = await handlers["record_correction"]({
        "what_i_did": "used var",
        "what_user_wanted": "use const",
        "lesson": "prefer const over var",
    })
    assert not result.get("isError")
    assert _text(result) == 'Correction recorded (id: 1) and pattern updated. Lesson: "prefer const over var"'
    exp = store.get_by_id(1)
    assert exp.type == "correction"
    assert exp.success is False
    assert exp.tags == "correction"
    pattern = store.get_pattern("prefer const over var")
    assert pattern.category == "correction"
    assert pattern.examples == ["Did: used var → Wanted: use const"]


@pytest.mark.asyncio
async def test_record_correction_twice_counts_pattern(handlers, store):
    args = {"what_i_did": "a", "what_user_wanted": "b", "lesson": "lesson"}
    await handlers["record_correction"](args)
    result = await handlers["record_correction"](args)
    assert "(deduplicated)" in _text(result)
    assert store.get_pattern("lesson").frequency == 2


@pytest.mark.asyncio
async def test_record_correction_missing_fields(handlers):
    result = await handlers["record_correction"]({"what_i_did": "a"})
    assert result["isError"]


# ============================================================================
# Handler: learn_preference / get_preferences
# ============================================================================

@pytest.mark.asyncio
async def test_learn_preference(handlers):
    result = await handlers["learn_preference"]({"key": "indent", "value": "2 spaces"})
    assert _text(result) == 'Preference "indent" = "2 spaces" saved [GLOBAL] (confidence: 0.3, effective: 0.3).'
    result = await handlers["learn_preference"]({"key": "indent", "value": "2 spaces", "scope": "web"})
    assert "[project: web]" in _text(result)


@pytest.mark.asyncio
async def test_learn_preference_missing_value(handlers):
    assert (await handlers["learn_preference"]({"key": "indent"}))["isError"]


@pytest.mark.asyncio
async def test_get_preferences_merged(handlers):
    await handlers["learn_preference"]({"key": "lang", "value": "english"})
    await handlers["learn_preference"]({"key": "lang", "value": "french", "scope": "web"})
    text = _text(await handlers["get_preferences"]({"project": "web"}))
    assert text.startswith("Preferences for web (global + project):")
    assert '- lang: "french"' in text
    assert "[project]" in text
    assert "english" not in text


@pytest.mark.asyncio
async def test_get_preferences_shows_decay(handlers, store):
    await handlers["learn_preference"]({"key": "style", "value": "black"})
    backdate(store, "preferences", 1, "last_confirmed_at", days=100)
    text = _text(await handlers["get_preferences"]({}))
    assert "(confidence: 0.3, effective: 0.21, decay: 0.7) [global]" in text


@pytest.mark.asyncio
async def test_get_preferences_empty(handlers):
    assert "No preferences saved yet" in _text(await handlers["get_preferences"]({}))


# ============================================================================
# Handler: query_memory / get_experience / get_timeline
# ============================================================================

@pytest.mark.asyncio
async def test_query_memory(handlers):
    await _record(handlers)
    text = _text(await handlers["query_memory"]({"query": "npm"}))
    assert text.startswith("Found 1 relevant experiences (compact):")
    assert "1. [id:1] [experience] OK | npm install fails with EACCES" in text
    assert "Use get_experience(id) for full details." in text


@pytest.mark.asyncio
async def test_query_memory_no_results(handlers):
    text = _text(await handlers["query_memory"]({"query": "kubernetes"}))
    assert text == "No relevant experiences found in memory. This is uncharted territory."


@pytest.mark.asyncio
async def test_query_memory_falls_back_on_bad_syntax(handlers):
    await _record(handlers)
    result = await handlers["query_memory"]({"query": '"unterminated'})
    assert not result.get("isError")
    text = _text(result)
    assert text.startswith("Direct search unavailable. Last 1 experiences:")
    assert "npm install fails with EACCES → installs cleanly" in text


@pytest.mark.asyncio
async def test_query_memory_requires_query(handlers):
    result = await handlers["query_memory"]({"query": "  "})
    assert _text(result) == "Error: query is required"


@pytest.mark.asyncio
async def test_query_memory_clamps_limit(handlers):
    for i in range(3):
        await _record(handlers, context=f"npm issue {i}")
    text = _text(await handlers["query_memory"]({"query": "npm", "limit": -5}))
    assert text.startswith("Found 1 relevant")


@pytest.mark.asyncio
async def test_get_experience(handlers):
    await _record(handlers, project="web", topic_key="setup:node")
    text = _text(await handlers["get_experience"]({"id": 1}))
    assert text.startswith("=== Experience #1 ===")
    assert "Project:    web" in text
    assert "Topic:      setup:node" in text
    assert "Action:     use a node version manager" in text


@pytest.mark.asyncio
async def test_get_experience_not_found(handlers):
    text = _text(await handlers["get_experience"]({"id": 42}))
    assert text == "Experience #42 not found (may have been deleted)."


@pytest.mark.asyncio
async def test_get_experience_bad_id(handlers):
    assert _text(await handlers["get_experience"]({})) == "Error: id is required"
    assert (await handlers["get_experience"]({"id": "abc"}))["isError"]
    assert (await handlers["get_experience"]({"id": True}))["isError"]


@pytest.mark.asyncio
async def test_get_timeline(handlers):
    await _record(handlers, context="first")
    await _record(handlers, context="second")
    text = _text(await handlers["get_timeline"]({"id": 2}))
    assert text.startswith("Timeline around experience #2 (+-1 hour):")
    assert "#1 [experience] OK | first" in text
    assert "#2 [experience] OK | second <<<" in text


@pytest.mark.asyncio
async def test_get_timeline_missing(handlers):
    assert "No timeline found" in _text(await handlers["get_timeline"]({"id": 7}))


# ============================================================================
# Handler: get_patterns / memory_stats
# ============================================================================

@pytest.mark.asyncio
async def test_get_patterns(handlers):
    assert "No patterns detected yet" in _text(await handlers["get_patterns"]({}))
    await handlers["record_correction"]({"what_i_did": "a", "what_user_wanted": "b", "lesson": "run tests"})
    text = _text(await handlers["get_patterns"]({"limit": 5}))
    assert text.startswith("1 patterns detected:")
    assert "1. [x1] run tests" in text


@pytest.mark.asyncio
async def test_memory_stats(handlers):
    await _record(handlers)
    await handlers["record_correction"]({"what_i_did": "a", "what_user_wanted": "b", "lesson": "lesson one"})
    text = _text(await handlers["memory_stats"]({}))
    assert text.startswith("=== Memory Status ===")
    assert "Experiences:        2" in text
    assert "Corrections:        1" in text
    assert "Latest corrections:\n- lesson one" in text
    assert "Top patterns:\n- [x1] lesson one" in text


# ============================================================================
# Handler: forget_memory / prune_memory
# ============================================================================

@pytest.mark.asyncio
async def test_forget_memory_by_tag(handlers, store):
    await _record(handlers)
    await _record(handlers, context="other", tags="python")
    text = _text(await handlers["forget_memory"]({"tag": "npm"}))
    assert text.startswith("Soft-deleted 1 experience(s). Active memory: 1 experiences, 1 soft-deleted")
    assert store.search("npm") == []


@pytest.mark.asyncio
async def test_forget_memory_exact_tag(handlers):
    await _record(handlers, tags="npmrc")
    text = _text(await handlers["forget_memory"]({"tag": "npm", "exact_tag": True}))
    assert text.startswith("Soft-deleted 0 experience(s).")


@pytest.mark.asyncio
async def test_forget_memory_requires_selector(handlers):
    result = await handlers["forget_memory"]({})
    assert _text(result) == "Error: you must provide at least one of: id, tag, or project."


@pytest.mark.asyncio
async def test_forget_memory_blank_tag_rejected(handlers, store):
    await _record(handlers)
    result = await handlers["forget_memory"]({"tag": "   "})
    assert result["isError"]
    assert store.stats().experiences == 1


@pytest.mark.asyncio
async def test_prune_memory(handlers, store):
    await _record(handlers, context="old failure", success=False)
    await _record(handlers, context="old success")
    await _record(handlers, context="fresh failure", success=False)
    backdate(store, "experiences", 1, "created_at", days=40)
    backdate(store, "experiences", 2, "created_at", days=40)
    text = _text(await handlers["prune_memory"]({"older_than_days": 30, "only_failures": True}))
    assert text.startswith("Pruned 1 experience(s).")
    assert store.get_by_id(1) is None
    assert store.get_by_id(2) is not None


@pytest.mark.asyncio
async def test_prune_memory_preferences(handlers):
    await handlers["learn_preference"]({"key": "weak", "value": "x"})
    text = _text(await handlers["prune_memory"]({"min_confidence": 0.5}))
    assert text.startswith("Pruned 1 preference(s).")


@pytest.mark.asyncio
async def test_prune_memory_nothing_matched(handlers):
    text = _text(await handlers["prune_memory"]({"older_than_days": 0}))
    assert text.startswith("No records matched the criteria.")


@pytest.mark.asyncio
async def test_prune_memory_validation(handlers):
    assert _text(await handlers["prune_memory"]({})) == (
        "Error: you must provide at least older_than_days or min_confidence."
    )
    assert (await handlers["prune_memory"]({"older_than_days": -1}))["isError"]
    assert (await handlers["prune_memory"]({"min_confidence": 2}))["isError"]
    assert (await handlers["prune_memory"]({"older_than_days": "soon"}))["isError"]


# ============================================================================
# Rate limiting
# ============================================================================

@pytest.fixture
def fresh_rate_limits(monkeypatch):
    monkeypatch.setattr(mcp_server, "_global_timestamps", collections.deque())
    monkeypatch.setattr(mcp_server, "_write_timestamps", collections.deque())


def test_write_rate_limit(monkeypatch, fresh_rate_limits):
    monkeypatch.setattr(mcp_server, "_WRITE_RATE_LIMIT", 2)
    assert mcp_server._check_rate_limit("record_experience") is None
    assert mcp_server._check_rate_limit("learn_preference") is None
    assert "2 write calls/min" in mcp_server._check_rate_limit("forget_memory")
    # Reads are only subject to the global limit
    assert mcp_server._check_rate_limit("query_memory") is None


def test_global_rate_limit(monkeypatch, fresh_rate_limits):
    monkeypatch.setattr(mcp_server, "_GLOBAL_RATE_LIMIT", 3)
    for _ in range(3):
        assert mcp_server._check_rate_limit("memory_stats") is None
    assert "3 calls/min globally" in mcp_server._check_rate_limit("memory_stats")


def test_rate_limit_window_expires(monkeypatch, fresh_rate_limits):
    monkeypatch.setattr(mcp_server, "_GLOBAL_RATE_LIMIT", 1)
    clock = [1000.0]
    monkeypatch.setattr(mcp_server.time, "monotonic", lambda: clock[0])
    assert mcp_server._check_rate_limit("memory_stats") is None
    assert mcp_server._check_rate_limit("memory_stats") is not None
    clock[0] += 61
    assert mcp_server._check_rate_limit("memory_stats") is None


# ============================================================================
# MCP Server dispatch
# ============================================================================

@pytest.mark.asyncio
async def test_server_lists_all_tools(store):
    from mcp.types import ListToolsRequest

    server = mcp_server.create_server(store)
    result = await server.request_handlers[ListToolsRequest](ListToolsRequest(method="tools/list"))
    names = [tool.name for tool in result.root.tools]
    assert names == [s["name"] for s in TOOL_SCHEMAS]


@pytest.mark.asyncio
async def test_server_call_tool(store, fresh_rate_limits):
    from mcp.types import CallToolRequest, CallToolRequestParams

    server = mcp_server.create_server(store)
    request = CallToolRequest(
        method="tools/call",
        params=CallToolRequestParams(name="memory_stats", arguments={}),
    )
    result = await server.request_handlers[CallToolRequest](request)
    assert result.root.content[0].text.startswith("=== Memory Status ===")
