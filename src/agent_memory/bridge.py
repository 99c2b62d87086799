"""
Agent Memory Bridge -- High-level API over a SQLiteStore.

Provides the public interface used by the MCP handlers, the CLI and the hooks.
Every function takes the store as its first argument and returns the
human-readable text shown to the agent.

Public API:
    Write:       record_experience, record_correction, learn_preference
    Read:        query, get_experience, timeline, patterns, preferences
    Maintenance: forget, prune, memory_stats, checkpoint
    Session:     session_context, auto_capture, session_summary
    Export:      export_memories, import_memories
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from agent_memory.sqlite_store import GLOBAL_SCOPE, SNIPPET_LENGTH, SQLiteStore
from agent_memory.types import (
    CompactExperience,
    ExperienceType,
    Preference,
    RecordOutcome,
    RecordResult,
    SearchUnavailableError,
)

logger = logging.getLogger("agent_memory.bridge")

# Rows written by hooks; kept out of the session-start digest.
HOOK_TYPES = (ExperienceType.AUTO_CAPTURE.value, ExperienceType.SESSION_SUMMARY.value)

_RECORD_STATUS = {
    RecordOutcome.CREATED: "saved",
    RecordOutcome.DEDUPLICATED: "deduplicated (existing updated)",
    RecordOutcome.UPSERTED: "upserted (topic updated)",
}


def _fmt_dt(dt: Optional[datetime]) -> str:
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def checkpoint(store: SQLiteStore) -> None:
    """Opportunistic WAL checkpoint after a write tool; never fails the write."""
    try:
        store.checkpoint("PASSIVE")
    except Exception as e:
        logger.warning("Post-write checkpoint failed: %s", e)


# ---------------------------------------------------------------------------
# Public API -- Write
# ---------------------------------------------------------------------------


def record_experience(
    store: SQLiteStore,
    context: str,
    action: str,
    result: str,
    success: bool,
    tags: str = "",
    project: str = "",
    topic_key: Optional[str] = None,
    exp_type: str = ExperienceType.EXPERIENCE.value,
) -> str:
    res = store.record(
        exp_type, context, action, result,
        success=success, tags=tags or "", project=project or "", topic_key=topic_key,
    )
    checkpoint(store)
    stats = store.stats()
    return (
        f"Experience {_RECORD_STATUS[res.outcome]} (id: {res.id}). "
        f"Memory: {stats.experiences} experiences, {stats.patterns} patterns, "
        f"{stats.global_preferences} global prefs, {stats.project_preferences} project prefs."
    )


def record_correction(
    store: SQLiteStore,
    what_i_did: str,
    what_user_wanted: str,
    lesson: str,
    tags: str = "",
    project: str = "",
) -> str:
    """Store a correction and count its lesson as a pattern."""
    res = store.record(
        ExperienceType.CORRECTION,
        what_i_did,
        what_user_wanted,
        lesson,
        success=False,
        tags=tags or "correction",
        project=project or "",
    )
    store.record_pattern(lesson, "correction", f"Did: {what_i_did} → Wanted: {what_user_wanted}")
    checkpoint(store)
    status = " (deduplicated)" if res.outcome is RecordOutcome.DEDUPLICATED else ""
    return f'Correction recorded{status} (id: {res.id}) and pattern updated. Lesson: "{lesson}"'


def learn_preference(
    store: SQLiteStore,
    key: str,
    value: str,
    scope: Optional[str] = None,
    source: Optional[str] = None,
) -> str:
    pref = store.affirm(key, value, scope=scope or GLOBAL_SCOPE, source=source or "observed")
    checkpoint(store)
    scope_label = "GLOBAL" if pref.scope == GLOBAL_SCOPE else f"project: {pref.scope}"
    return (
        f'Preference "{pref.key}" = "{pref.value}" saved [{scope_label}] '
        f"(confidence: {pref.confidence}, effective: {pref.effective_confidence()})."
    )


# ---------------------------------------------------------------------------
# Public API -- Read
# ---------------------------------------------------------------------------


def _format_compact(index: int, r: CompactExperience) -> str:
    status = "OK" if r.success else "FAIL"
    project = f" ({r.project})" if r.project else ""
    ellipsis = "..." if len(r.snippet) >= SNIPPET_LENGTH else ""
    line = f"{index}. [id:{r.id}] [{r.type}] {status}{project} | {r.snippet}{ellipsis}\n"
    line += f"   Tags: {r.tags} | {_fmt_dt(r.created_at)}"
    if r.duplicate_count > 1:
        line += f" | x{r.duplicate_count} dups"
    if r.revision_count > 1:
        line += f" | rev {r.revision_count}"
    return line


def query(store: SQLiteStore, query_text: str, project: Optional[str] = None, limit: int = 5) -> str:
    """Ranked compact search; falls back to the latest experiences if the index can't answer."""
    try:
        results = store.search(query_text, project=project or None, limit=limit)
    except SearchUnavailableError as e:
        logger.warning("Search unavailable, falling back to recent experiences: %s", e)
        recent = store.get_recent(limit)
        lines = [f"{i}. [id:{r.id}] [{r.type}] {r.context} → {r.result}" for i, r in enumerate(recent, 1)]
        return f"Direct search unavailable. Last {len(recent)} experiences:\n\n" + "\n".join(lines)

    if not results:
        return "No relevant experiences found in memory. This is uncharted territory."

    formatted = "\n\n".join(_format_compact(i, r) for i, r in enumerate(results, 1))
    return (
        f"Found {len(results)} relevant experiences (compact):\n\n{formatted}\n\n"
        "Use get_experience(id) for full details."
    )


def get_experience(store: SQLiteStore, experience_id: int) -> str:
    exp = store.get_by_id(experience_id)
    if exp is None:
        return f"Experience #{experience_id} not found (may have been deleted)."

    lines = [
        f"=== Experience #{exp.id} ===",
        f"Type:       {exp.type}",
        f"Success:    {'Yes' if exp.success else 'No'}",
        f"Project:    {exp.project or '(global)'}",
        f"Tags:       {exp.tags or '(none)'}",
        f"Created:    {_fmt_dt(exp.created_at)}",
    ]
    if exp.topic_key:
        lines.append(f"Topic:      {exp.topic_key}")
    if exp.revision_count > 1:
        lines.append(f"Revisions:  {exp.revision_count}")
    if exp.duplicate_count > 1:
        lines.append(f"Duplicates: {exp.duplicate_count}")
    lines += [
        "",
        f"Context:    {exp.context}",
        f"Action:     {exp.action}",
        f"Result:     {exp.result}",
    ]
    return "\n".join(lines)


def timeline(store: SQLiteStore, experience_id: int) -> str:
    rows = store.get_timeline(experience_id)
    if not rows:
        return f"No timeline found for experience #{experience_id} (may have been deleted)."
    lines = []
    for r in rows:
        marker = " <<<" if r.id == experience_id else ""
        status = "OK" if r.success else "FAIL"
        lines.append(f"[{_fmt_dt(r.created_at)}] #{r.id} [{r.type}] {status} | {r.snippet}{marker}")
    return f"Timeline around experience #{experience_id} (+-1 hour):\n\n" + "\n".join(lines)


def patterns(store: SQLiteStore, limit: int = 10) -> str:
    results = store.get_patterns(limit)
    if not results:
        return "No patterns detected yet. They will form with usage."
    formatted = "\n\n".join(
        f"{i}. [x{p.frequency}] {p.description}\n   Category: {p.category} | Last seen: {_fmt_dt(p.last_seen)}"
        for i, p in enumerate(results, 1)
    )
    return f"{len(results)} patterns detected:\n\n{formatted}"


def _format_preference(p: Preference, now: datetime) -> str:
    origin = p.origin or p.scope or GLOBAL_SCOPE
    return (
        f'- {p.key}: "{p.value}" (confidence: {p.confidence}, '
        f"effective: {p.effective_confidence(now)}, decay: {p.decay_factor(now)}) [{origin}]"
    )


def preferences(store: SQLiteStore, project: Optional[str] = None) -> str:
    """Global preferences, or global + project merged when a project is given."""
    now = datetime.now(timezone.utc)
    if project:
        results = store.get_merged_preferences(project, now=now)
        label = f"Preferences for {project} (global + project)"
    else:
        results = store.get_global_preferences()
        label = "Global preferences"
    if not results:
        return "No preferences saved yet. They will be learned with usage."
    return f"{label}:\n\n" + "\n".join(_format_preference(p, now) for p in results)


# ---------------------------------------------------------------------------
# Public API -- Maintenance
# ---------------------------------------------------------------------------


def forget(
    store: SQLiteStore,
    experience_id: Optional[int] = None,
    tag: Optional[str] = None,
    project: Optional[str] = None,
    exact_tag: bool = False,
) -> str:
    deleted = store.soft_delete(id=experience_id, tag=tag, project=project, exact_tag=exact_tag)
    if deleted:
        checkpoint(store)
    stats = store.stats()
    return (
        f"Soft-deleted {deleted} experience(s). Active memory: {stats.experiences} experiences, "
        f"{stats.soft_deleted} soft-deleted, {stats.patterns} patterns."
    )


def prune(
    store: SQLiteStore,
    older_than_days: Optional[float] = None,
    only_failures: bool = False,
    min_confidence: Optional[float] = None,
) -> str:
    result = store.prune(
        older_than_days=older_than_days, only_failures=only_failures, min_confidence=min_confidence
    )
    if result.experiences or result.preferences:
        checkpoint(store)
    parts: List[str] = []
    if result.experiences:
        parts.append(f"{result.experiences} experience(s)")
    if result.preferences:
        parts.append(f"{result.preferences} preference(s)")
    summary = f"Pruned {' and '.join(parts)}." if parts else "No records matched the criteria."
    stats = store.stats()
    return (
        f"{summary} Active memory: {stats.experiences} experiences, {stats.soft_deleted} soft-deleted, "
        f"{stats.global_preferences} global prefs, {stats.project_preferences} project prefs."
    )


def memory_stats(store: SQLiteStore) -> str:
    stats = store.stats()
    text = (
        "=== Memory Status ===\n"
        f"Experiences:        {stats.experiences}\n"
        f"Corrections:        {stats.corrections}\n"
        f"Soft-deleted:       {stats.soft_deleted}\n"
        f"Global prefs:       {stats.global_preferences}\n"
        f"Project prefs:      {stats.project_preferences}\n"
        f"Patterns:           {stats.patterns}"
    )
    corrections = store.get_by_type(ExperienceType.CORRECTION, limit=3)
    if corrections:
        text += "\n\nLatest corrections:"
        for c in corrections:
            text += f"\n- {c.result}"
    top = store.get_patterns(3)
    if top:
        text += "\n\nTop patterns:"
        for p in top:
            text += f"\n- [x{p.frequency}] {p.description}"
    return text


# ---------------------------------------------------------------------------
# Public API -- Session
# ---------------------------------------------------------------------------

# Shell commands not worth remembering.
_TRIVIAL_COMMAND_RE = re.compile(
    r"^\s*(cd|ls|pwd|cat|head|tail|echo|true|false|:|test|which|whoami|date|clear)(\s|$)"
)
_CAPTURED_TOOLS = frozenset({"Write", "Edit", "Bash"})
_MIN_COMMAND_LENGTH = 5
_MAX_COMMAND_CHARS = 200
_MAX_CAPTURE_CHARS = 500
SESSION_WINDOW = timedelta(hours=24)


def _section(title: str, lines: List[str]) -> str:
    body = "\n".join(lines) if lines else "_(none found)_"
    return f"### {title} ({len(lines)}{' loaded' if title == 'User Preferences' else ''})\n{body}\n"


def session_context(
    store: SQLiteStore,
    project: str,
    source: str = "startup",
    recent_limit: int = 5,
    exclude_types: Sequence[str] = HOOK_TYPES,
) -> str:
    """Markdown digest injected at session start.

    Merged preferences, recent non-hook experiences, top patterns and the
    latest corrections; every section is present even when empty.
    """
    now = datetime.now(timezone.utc)
    prefs = store.get_merged_preferences(project, now=now) if project else store.get_global_preferences()
    recent = store.get_recent(recent_limit, project=project or None, exclude_types=exclude_types)
    top = store.get_patterns(3)
    corrections = store.get_by_type(ExperienceType.CORRECTION, limit=3)

    output = "## Agent Memory Context (auto-injected via hook)\n"
    output += f"**Project:** {project or '(unknown)'}\n"
    output += f"**Source:** {source}\n\n"
    output += _section(
        "User Preferences",
        [f"- **{p.key}:** {p.value} (confidence: {p.effective_confidence(now)})" for p in prefs],
    )
    output += "\n" + _section(
        "Recent Experiences",
        [f"- [{r.type}] {r.context[:SNIPPET_LENGTH]} ({_fmt_dt(r.created_at)})" for r in recent],
    )
    output += "\n" + _section(
        "Top Patterns",
        [f"- {p.description} (freq: {p.frequency}, cat: {p.category})" for p in top],
    )
    output += "\n" + _section(
        "Recent Corrections",
        [f"- Did: {c.context[:80]} -> Wanted: {c.action[:80]}" for c in corrections],
    )
    return output


def auto_capture(
    store: SQLiteStore,
    tool_name: str,
    tool_input: Optional[dict],
    project: str = "",
) -> Optional[RecordResult]:
    """Record an auto_capture experience for a Write/Edit/Bash tool call.

    Returns None when the call is not worth keeping (other tools, trivial
    shell commands). Repeats within the dedup window only bump the counter.
    """
    if tool_name not in _CAPTURED_TOOLS:
        return None
    tool_input = tool_input or {}
    if tool_name == "Bash":
        command = str(tool_input.get("command") or "")
        if len(command) < _MIN_COMMAND_LENGTH or _TRIVIAL_COMMAND_RE.match(command):
            return None
        context = f"Bash: {command[:_MAX_COMMAND_CHARS]}"
    else:
        file_path = tool_input.get("file_path") or tool_input.get("path")
        context = f"{tool_name}: {file_path or '(unknown file)'}"

    return store.record(
        ExperienceType.AUTO_CAPTURE,
        context[:_MAX_CAPTURE_CHARS],
        "tool_use",
        tool_name,
        success=True,
        tags="auto,hook",
        project=project,
    )


def session_summary(store: SQLiteStore, project: str = "") -> Optional[RecordResult]:
    """Record a session_summary when the project saw tool activity in the last 24 hours."""
    since = datetime.now(timezone.utc) - SESSION_WINDOW
    count = store.count_by_type(ExperienceType.AUTO_CAPTURE, project=project or None, since=since)
    if count == 0:
        return None
    res = store.record(
        ExperienceType.SESSION_SUMMARY,
        f"Session ended. {count} tool actions captured for project {project}.",
        "session_end",
        f"{count} actions captured",
        success=True,
        tags="session,hook",
        project=project,
    )
    checkpoint(store)
    return res


# ---------------------------------------------------------------------------
# Public API -- Export
# ---------------------------------------------------------------------------


def export_memories(store: SQLiteStore, filepath: str) -> str:
    result = store.export_to_file(Path(filepath))
    output = "# Agent Memory Export Complete\n\n"
    output += f"**File:** {result['path']}\n"
    output += f"**Experiences:** {result['experiences']}\n"
    output += f"**Preferences:** {result['preferences']}\n"
    output += f"**Patterns:** {result['patterns']}\n"
    output += f"**Encrypted:** {'Yes' if result['encrypted'] else 'No'}\n"
    return output


def import_memories(store: SQLiteStore, filepath: str, clear_existing: bool = True) -> str:
    result = store.import_from_file(Path(filepath), clear_existing=clear_existing)
    checkpoint(store)
    output = "# Agent Memory Import Complete\n\n"
    output += f"**File:** {filepath}\n"
    output += f"**Experiences Imported:** {result['experiences']}\n"
    output += f"**Preferences Imported:** {result['preferences']}\n"
    output += f"**Patterns Imported:** {result['patterns']}\n"
    output += f"**Cleared Existing:** {'Yes' if clear_existing else 'No'}\n"
    return output
