"""Agent Memory MCP Tool Schemas -- 11 tools.

Write tools feed the experience log, the preference table and the pattern
catalogue; read tools return compact text for the agent's context window.
"""

TOOL_SCHEMAS = [
    {
        "name": "record_experience",
        "description": "Save an experience to the agent's memory. Use this to remember what worked, what failed, and in what context. Each experience enriches the collective memory.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "context": {"type": "string", "description": "What was happening (the problem or situation)"},
                "action": {"type": "string", "description": "What was done to resolve it"},
                "result": {"type": "string", "description": "What happened after the action"},
                "success": {"type": "boolean", "description": "Did it work? true/false"},
                "tags": {"type": "string", "description": "Comma-separated tags (e.g. 'typescript,bug,api')"},
                "project": {"type": "string", "description": "Project name or path. If omitted, saved as a global experience."},
                "topic_key": {
                    "type": "string",
                    "description": "A unique topic identifier (e.g. 'arch:database-schema'). If provided, updates the existing experience with the same topic_key+project instead of creating a new one. Use for knowledge that evolves over time.",
                },
            },
            "required": ["context", "action", "result", "success"],
        },
    },
    {
        "name": "record_correction",
        "description": "Record when the user corrects or rejects an action. This is CRITICAL for learning their preferences. Use it whenever the user says 'no', 'not like that', 'do it differently', or rejects a tool call.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "what_i_did": {"type": "string", "description": "What you did that was incorrect or rejected"},
                "what_user_wanted": {"type": "string", "description": "What the user actually wanted"},
                "lesson": {"type": "string", "description": "Lesson learned: what to do differently next time"},
                "tags": {"type": "string", "description": "Tags to categorize (e.g. 'style,code,communication')"},
                "project": {"type": "string", "description": "Project where the correction happened"},
            },
            "required": ["what_i_did", "what_user_wanted", "lesson"],
        },
    },
    {
        "name": "learn_preference",
        "description": (
            "Save or update a user preference. Supports TWO levels:\n"
            "- scope='global' (default): applies to ALL projects\n"
            "- scope='project-name': applies ONLY to that project and overrides the global\n\n"
            "Each time the same preference is confirmed, its confidence increases."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "Preference name (e.g. 'language', 'code_style')"},
                "value": {"type": "string", "description": "Preference value (e.g. 'english', 'functional')"},
                "scope": {"type": "string", "description": "'global' (default) or project name for a project-specific preference"},
                "source": {"type": "string", "description": "Where it was learned from (e.g. 'user said so')"},
            },
            "required": ["key", "value"],
        },
    },
    {
        "name": "query_memory",
        "description": "Search the memory for relevant experiences. USE THIS BEFORE making important decisions to check if past experiences apply. Full-text search, compact results.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for (free text, e.g. 'error typescript imports')"},
                "project": {"type": "string", "description": "If provided, searches experiences from this project + global ones"},
                "limit": {"type": "integer", "default": 5, "description": "Maximum results (default: 5)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_experience",
        "description": "Get full details of a specific experience by ID. Use this after query_memory returns compact results.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "The experience ID to retrieve"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "get_timeline",
        "description": "Get chronological context around a specific experience: what happened before and after within a 1-hour window.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "The experience ID to get the timeline around"},
            },
            "required": ["id"],
        },
    },
    {
        "name": "get_patterns",
        "description": "Returns the most frequent patterns detected: recurring errors, successful workflows, repeatedly learned lessons.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "default": 10, "description": "Maximum patterns (default: 10)"},
            },
        },
    },
    {
        "name": "get_preferences",
        "description": "Returns user preferences. If a project is provided, returns global + project-specific preferences combined (project takes priority). Check this at the start of each session.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project": {"type": "string", "description": "Project name. If omitted, returns only global preferences."},
            },
        },
    },
    {
        "name": "memory_stats",
        "description": "Shows memory statistics: experiences, corrections, soft-deleted, global/project preferences, and patterns.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "forget_memory",
        "description": "Delete specific memories by id, tag, or project. Deleted experiences disappear from search but are kept on disk. Requires at least one parameter.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "ID of the experience to delete"},
                "tag": {"type": "string", "description": "Delete all experiences whose tags contain this text"},
                "project": {"type": "string", "description": "Delete all experiences from this project"},
                "exact_tag": {"type": "boolean", "default": False, "description": "Match the tag exactly instead of as a substring"},
            },
        },
    },
    {
        "name": "prune_memory",
        "description": "Memory cleanup. Deletes old experiences (by days), optionally failures only, and/or low-confidence preferences. Requires at least one threshold.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "older_than_days": {"type": "number", "description": "Delete experiences older than N days"},
                "only_failures": {"type": "boolean", "default": False, "description": "Only delete failed experiences"},
                "min_confidence": {"type": "number", "description": "Delete preferences with confidence below this value"},
            },
        },
    },
]
