"""
MCP Tool Definitions and Handlers for SecondBrain Memory System
Copyright 2025 Jurden Bruce

All tool responses return JSON for AI consumption, not human-formatted text.
"""

import json
import logging
from datetime import datetime
from typing import List, Dict, Any

from mcp.types import Tool, TextContent

from .knowledge_store import (
    OBSERVATION_TYPES,
    OBSERVATION_CATEGORIES,
    ERROR_TYPES,
    LANGUAGES,
    PATTERN_CATEGORIES,
    KEYWORD_SEARCH_FIELDS,
    PREFERENCE_CATEGORIES,
    PROJECT_STATUSES,
    CONTEXT_SECTIONS,
)
from .models import SessionContext, SOURCE_TYPES


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects"""
    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)

logger = logging.getLogger("secondbrain-memory.mcp-tools")

_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_SESSION_PROPERTIES = {
    "project": {"type": "string", "description": "Project name (created on first use)"},
    "session_id": {"type": "string", "description": "Session identifier"},
}
_RANKING_PROPERTIES = {
    "recency_weight": {"type": "number", "description": "Weight of recency (0-1)", "default": 0.3},
    "importance_weight": {"type": "number", "description": "Weight of importance (0-1)", "default": 0.2},
    "decay_days": {"type": "number", "description": "Recency decay constant in days", "default": 30},
}


def get_tool_definitions() -> List[Tool]:
    """Return list of available MCP tools"""
    return [
        Tool(
            name="capture_observation",
            description="Capture a discovery, pattern, insight or note while working. Saved immediately; embedded for semantic search in the background.",
            inputSchema={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Short title"},
                    "content": {"type": "string", "description": "What was observed"},
                    "type": {"type": "string", "enum": list(OBSERVATION_TYPES)},
                    "category": {"type": "string", "enum": list(OBSERVATION_CATEGORIES)},
                    "files": {**_STRING_LIST, "description": "Related file paths"},
                    "tags": _STRING_LIST,
                    "importance": {"type": "integer", "minimum": 1, "maximum": 5, "default": 3},
                    **_SESSION_PROPERTIES,
                },
                "required": ["title", "content", "type"],
            },
        ),
        Tool(
            name="capture_decision",
            description="Capture a technical decision with its context, the options considered and the rationale.",
            inputSchema={
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "context": {"type": "string", "description": "Why a decision was needed"},
                    "options": {**_STRING_LIST, "description": "Options considered"},
                    "chosen": {"type": "string", "description": "Option chosen"},
                    "rationale": {"type": "string", "description": "Why it was chosen"},
                    "tags": _STRING_LIST,
                    **_SESSION_PROPERTIES,
                },
                "required": ["title", "context", "chosen", "rationale"],
            },
        ),
        Tool(
            name="capture_bug",
            description="Capture a bug and its fix so the same error can be solved faster next time.",
            inputSchema={
                "type": "object",
                "properties": {
                    "error_type": {"type": "string", "enum": list(ERROR_TYPES)},
                    "error_message": {"type": "string"},
                    "root_cause": {"type": "string"},
                    "solution": {"type": "string"},
                    "prevention": {"type": "string"},
                    "files_affected": _STRING_LIST,
                    "tags": _STRING_LIST,
                    **_SESSION_PROPERTIES,
                },
                "required": ["error_type", "error_message", "solution"],
            },
        ),
        Tool(
            name="save_snippet",
            description="Save a reusable code snippet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "language": {"type": "string", "enum": list(LANGUAGES)},
                    "code": {"type": "string"},
                    "description": {"type": "string"},
                    "use_cases": _STRING_LIST,
                    "tags": _STRING_LIST,
                    **_SESSION_PROPERTIES,
                },
                "required": ["title", "language", "code"],
            },
        ),
        Tool(
            name="capture_pattern",
            description="Capture a reusable design or architecture pattern: the problem it solves and how.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "category": {"type": "string", "enum": list(PATTERN_CATEGORIES)},
                    "problem": {"type": "string"},
                    "solution": {"type": "string"},
                    "example_code": {"type": "string"},
                    "when_to_use": _STRING_LIST,
                    "when_not_to_use": _STRING_LIST,
                    "related_patterns": _STRING_LIST,
                    "tags": _STRING_LIST,
                    "project": {"type": "string"},
                },
                "required": ["name", "category", "problem", "solution"],
            },
        ),
        Tool(
            name="save_workflow",
            description="Create or update a reusable workflow (matched by name and project). The workflow's embedding is replaced on every update.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "trigger": {"type": "string", "description": "When this workflow applies"},
                    "description": {"type": "string"},
                    "steps": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "order": {"type": "number"},
                                "action": {"type": "string"},
                                "description": {"type": "string"},
                            },
                            "required": ["order", "action"],
                        },
                    },
                    "tools_used": _STRING_LIST,
                    "estimated_duration": {"type": "number", "description": "Minutes"},
                    "success_criteria": {"type": "string"},
                    "tags": _STRING_LIST,
                    "project": {"type": "string"},
                },
                "required": ["name", "trigger", "steps"],
            },
        ),
        Tool(
            name="get_workflow",
            description="Get a workflow with all of its steps.",
            inputSchema={
                "type": "object",
                "properties": {"workflow_id": {"type": "string"}},
                "required": ["workflow_id"],
            },
        ),
        Tool(
            name="record_workflow_execution",
            description="Record that a workflow was run, updating its execution count and average duration.",
            inputSchema={
                "type": "object",
                "properties": {
                    "workflow_id": {"type": "string"},
                    "success": {"type": "boolean"},
                    "duration_minutes": {"type": "number"},
                    "notes": {"type": "string"},
                },
                "required": ["workflow_id", "success"],
            },
        ),
        Tool(
            name="find_workflow",
            description="Find workflows relevant to what you want to do (semantic match on name, trigger, description and steps).",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "project": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 10, "default": 5},
                    "threshold": {"type": "number", "default": 0.5},
                    **_RANKING_PROPERTIES,
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="record_decision_outcome",
            description="Record how a past decision turned out and whether you would make it again.",
            inputSchema={
                "type": "object",
                "properties": {
                    "decision_id": {"type": "string"},
                    "outcome": {"type": "string"},
                    "would_do_again": {"type": "boolean"},
                    "outcome_notes": {"type": "string"},
                },
                "required": ["decision_id", "outcome", "would_do_again"],
            },
        ),
        Tool(
            name="get_pending_outcomes",
            description="List decisions older than N days that have no recorded outcome yet, oldest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "project": {"type": "string"},
                    "days_old": {"type": "integer", "minimum": 1, "maximum": 90, "default": 7},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 10},
                },
            },
        ),
        Tool(
            name="semantic_search",
            description="Search captured knowledge by meaning. Results are ranked by a blend of similarity, recency and importance.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "types": {
                        "type": "array",
                        "items": {"type": "string", "enum": list(SOURCE_TYPES)},
                        "description": "Record types to search (default: all)",
                    },
                    "threshold": {"type": "number", "description": "Minimum similarity (0-1)", "default": 0.7},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
                    "project": {"type": "string"},
                    **_RANKING_PROPERTIES,
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="search_knowledge",
            description="Keyword search (case-insensitive substring) across captured knowledge, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "collections": {
                        "type": "array",
                        "items": {"type": "string", "enum": list(KEYWORD_SEARCH_FIELDS)},
                    },
                    "project": {"type": "string"},
                    "tags": _STRING_LIST,
                    "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="embedding_health",
            description="Report on stored embeddings: counts by type and model, invalid vectors, orphans and duplicates.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="cleanup_embeddings",
            description="Delete invalid, orphaned and duplicate embeddings.",
            inputSchema={
                "type": "object",
                "properties": {"dry_run": {"type": "boolean", "default": False}},
            },
        ),
        Tool(
            name="repair_embeddings",
            description="Re-embed records that are missing a valid, current embedding.",
            inputSchema={
                "type": "object",
                "properties": {
                    "dry_run": {"type": "boolean", "default": False},
                    "types": {"type": "array", "items": {"type": "string", "enum": list(SOURCE_TYPES)}},
                },
            },
        ),
        Tool(
            name="save_project",
            description="Create a project or update its description, tech stack and status.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "tech_stack": _STRING_LIST,
                    "status": {"type": "string", "enum": list(PROJECT_STATUSES)},
                },
                "required": ["name"],
            },
        ),
        Tool(
            name="get_project_context",
            description="Get full context for a project including tech stack, recent decisions, bugs, patterns and preferences.",
            inputSchema={
                "type": "object",
                "properties": {
                    "project": {"type": "string", "description": "Project name"},
                    "include": {
                        "type": "array",
                        "items": {"type": "string", "enum": list(CONTEXT_SECTIONS)},
                        "description": "What to include (default: all)",
                    },
                    "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
                },
                "required": ["project"],
            },
        ),
        Tool(
            name="save_preference",
            description="Save a user preference. A preference that matches an existing one in the same category updates it and appends the examples.",
            inputSchema={
                "type": "object",
                "properties": {
                    "category": {"type": "string", "enum": list(PREFERENCE_CATEGORIES)},
                    "preference": {"type": "string"},
                    "reason": {"type": "string"},
                    "examples": _STRING_LIST,
                    "strength": {"type": "integer", "minimum": 1, "maximum": 5, "description": "How strong is this preference (1-5)"},
                },
                "required": ["category", "preference"],
            },
        ),
        Tool(
            name="get_preferences",
            description="Get user preferences (coding style, tools, workflow), strongest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "category": {"type": "string", "enum": list(PREFERENCE_CATEGORIES) + ["all"], "default": "all"},
                },
            },
        ),
        Tool(
            name="get_statistics",
            description="Get record counts, embedding status and recent errors.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="get_command_history",
            description="Get the history of tool calls made against this store.",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "default": 20},
                    "tool_name": {"type": "string"},
                },
            },
        ),
    ]


def _json_response(result: Any) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(result, indent=2, cls=DateTimeEncoder))]


async def handle_tool_call(name: str, arguments: Dict[str, Any], knowledge_store) -> List[TextContent]:
    """
    Handle MCP tool calls with JSON responses

    Args:
        name: Tool name
        arguments: Tool arguments
        knowledge_store: KnowledgeStore instance

    Returns:
        List of TextContent with JSON-encoded responses
    """
    arguments = arguments or {}
    context = SessionContext.from_arguments(arguments)

    try:
        if name == "capture_observation":
            result = await knowledge_store.capture_observation(
                title=arguments["title"],
                content=arguments["content"],
                type=arguments["type"],
                category=arguments.get("category"),
                project=arguments.get("project"),
                files=arguments.get("files"),
                tags=arguments.get("tags"),
                importance=arguments.get("importance"),
                context=context,
            )
            _log_command(knowledge_store, name, arguments, "observation captured", result["id"], True)
            return _json_response(result)

        elif name == "capture_decision":
            result = await knowledge_store.capture_decision(
                title=arguments["title"],
                context_text=arguments["context"],
                chosen=arguments["chosen"],
                rationale=arguments["rationale"],
                options=arguments.get("options"),
                project=arguments.get("project"),
                tags=arguments.get("tags"),
                context=context,
            )
            _log_command(knowledge_store, name, arguments, "decision captured", result["id"], True)
            return _json_response(result)

        elif name == "capture_bug":
            result = await knowledge_store.capture_bug(
                error_type=arguments["error_type"],
                error_message=arguments["error_message"],
                solution=arguments["solution"],
                root_cause=arguments.get("root_cause"),
                prevention=arguments.get("prevention"),
                files_affected=arguments.get("files_affected"),
                project=arguments.get("project"),
                tags=arguments.get("tags"),
                context=context,
            )
            _log_command(knowledge_store, name, arguments, "bug captured", result["id"], True)
            return _json_response(result)

        elif name == "save_snippet":
            result = await knowledge_store.save_snippet(
                title=arguments["title"],
                language=arguments["language"],
                code=arguments["code"],
                description=arguments.get("description"),
                use_cases=arguments.get("use_cases"),
                project=arguments.get("project"),
                tags=arguments.get("tags"),
                context=context,
            )
            _log_command(knowledge_store, name, arguments, "snippet saved", result["id"], True)
            return _json_response(result)

        elif name == "capture_pattern":
            result = await knowledge_store.capture_pattern(
                name=arguments["name"],
                category=arguments["category"],
                problem=arguments["problem"],
                solution=arguments["solution"],
                example_code=arguments.get("example_code"),
                when_to_use=arguments.get("when_to_use"),
                when_not_to_use=arguments.get("when_not_to_use"),
                related_patterns=arguments.get("related_patterns"),
                project=arguments.get("project"),
                tags=arguments.get("tags"),
            )
            _log_command(knowledge_store, name, arguments, "pattern captured", result["id"], True)
            return _json_response(result)

        elif name == "save_workflow":
            result = await knowledge_store.save_workflow(
                name=arguments["name"],
                trigger=arguments["trigger"],
                steps=arguments["steps"],
                description=arguments.get("description"),
                tools_used=arguments.get("tools_used"),
                estimated_duration=arguments.get("estimated_duration"),
                success_criteria=arguments.get("success_criteria"),
                project=arguments.get("project"),
                tags=arguments.get("tags"),
            )
            _log_command(knowledge_store, name, arguments, f"workflow {result['action']}", result["id"], True)
            return _json_response(result)

        elif name == "get_workflow":
            result = await knowledge_store.get_workflow(arguments["workflow_id"])
            _log_command(knowledge_store, name, arguments, "workflow retrieved", result["id"], True)
            return _json_response(result)

        elif name == "record_workflow_execution":
            result = await knowledge_store.record_workflow_execution(
                workflow_id=arguments["workflow_id"],
                success=arguments["success"],
                duration_minutes=arguments.get("duration_minutes"),
                notes=arguments.get("notes"),
            )
            _log_command(knowledge_store, name, arguments,
                         f"execution #{result['execution_count']}", arguments["workflow_id"], True)
            return _json_response(result)

        elif name == "find_workflow":
            result = await knowledge_store.find_workflow(
                query=arguments["query"],
                project=arguments.get("project"),
                limit=arguments.get("limit", 5),
                threshold=arguments.get("threshold", 0.5),
                recency_weight=arguments.get("recency_weight", 0.3),
                importance_weight=arguments.get("importance_weight", 0.2),
                decay_days=arguments.get("decay_days", 30),
            )
            _log_command(knowledge_store, name, arguments, f"found {result['total']} workflows", None, True)
            return _json_response(result)

        elif name == "record_decision_outcome":
            result = await knowledge_store.record_decision_outcome(
                decision_id=arguments["decision_id"],
                outcome=arguments["outcome"],
                would_do_again=arguments["would_do_again"],
                outcome_notes=arguments.get("outcome_notes"),
            )
            _log_command(knowledge_store, name, arguments, "outcome recorded", arguments["decision_id"], True)
            return _json_response(result)

        elif name == "get_pending_outcomes":
            result = await knowledge_store.get_pending_outcomes(
                project=arguments.get("project"),
                days_old=arguments.get("days_old", 7),
                limit=arguments.get("limit", 10),
            )
            _log_command(knowledge_store, name, arguments, f"{result['total']} pending", None, True)
            return _json_response(result)

        elif name == "semantic_search":
            result = await knowledge_store.semantic_search(
                query=arguments["query"],
                source_types=arguments.get("types"),
                threshold=arguments.get("threshold", 0.7),
                limit=arguments.get("limit", 5),
                recency_weight=arguments.get("recency_weight", 0.3),
                importance_weight=arguments.get("importance_weight", 0.2),
                decay_days=arguments.get("decay_days", 30),
                project=arguments.get("project"),
            )
            _log_command(knowledge_store, name, arguments, f"found {result['total']} results", None, True)
            return _json_response(result)

        elif name == "search_knowledge":
            result = await knowledge_store.search_knowledge(
                query=arguments["query"],
                collections=arguments.get("collections"),
                project=arguments.get("project"),
                limit=arguments.get("limit", 10),
                tags=arguments.get("tags"),
            )
            _log_command(knowledge_store, name, arguments, f"found {result['total']} results", None, True)
            return _json_response(result)

        elif name == "embedding_health":
            result = await knowledge_store.embedding_health()
            _log_command(knowledge_store, name, arguments, f"{result['total']} embeddings", None, True)
            return _json_response(result)

        elif name == "cleanup_embeddings":
            result = await knowledge_store.cleanup_embeddings(dry_run=arguments.get("dry_run", False))
            _log_command(knowledge_store, name, arguments, f"deleted {result['deleted']}", None, True)
            return _json_response(result)

        elif name == "repair_embeddings":
            result = await knowledge_store.repair_embeddings(
                dry_run=arguments.get("dry_run", False),
                source_types=arguments.get("types"),
            )
            _log_command(knowledge_store, name, arguments,
                         f"repaired {result['repaired']}/{result['missing']}", None, not result["failed"])
            return _json_response(result)

        elif name == "save_project":
            result = await knowledge_store.save_project(
                name=arguments["name"],
                description=arguments.get("description"),
                tech_stack=arguments.get("tech_stack"),
                status=arguments.get("status"),
            )
            _log_command(knowledge_store, name, arguments, "project saved", result["id"], True)
            return _json_response(result)

        elif name == "get_project_context":
            result = await knowledge_store.get_project_context(
                project=arguments["project"],
                include=arguments.get("include"),
                limit=arguments.get("limit", 5),
            )
            _log_command(knowledge_store, name, arguments, "context retrieved", None, result["project"] is not None)
            return _json_response(result)

        elif name == "save_preference":
            result = await knowledge_store.save_preference(
                category=arguments["category"],
                preference=arguments["preference"],
                reason=arguments.get("reason"),
                examples=arguments.get("examples"),
                strength=arguments.get("strength"),
            )
            _log_command(knowledge_store, name, arguments, result["message"], result["id"], True)
            return _json_response(result)

        elif name == "get_preferences":
            result = await knowledge_store.get_preferences(category=arguments.get("category"))
            _log_command(knowledge_store, name, arguments, f"{result['total']} preferences", None, True)
            return _json_response(result)

        elif name == "get_statistics":
            result = knowledge_store.get_statistics()
            return _json_response(result)

        elif name == "get_command_history":
            history = knowledge_store.sqlite_store.get_command_history(
                limit=arguments.get("limit", 20),
                tool_name=arguments.get("tool_name"),
            )
            return _json_response({"total": len(history), "commands": history})

        else:
            return _json_response({"error": f"Unknown tool: {name}"})

    except Exception as e:
        logger.error(f"Tool execution error: {name}: {e}", exc_info=True)
        _log_command(knowledge_store, name, arguments, str(e), None, False)
        return [TextContent(type="text", text=json.dumps({
            "error": str(e),
            "tool": name,
            "type": type(e).__name__,
        }, indent=2))]


def _log_command(knowledge_store, tool_name: str, args: Dict[str, Any],
                 result_summary: str = None, record_id: str = None, success: bool = True):
    """Helper to log command to history"""
    try:
        if hasattr(knowledge_store, 'sqlite_store') and knowledge_store.sqlite_store:
            knowledge_store.sqlite_store.log_command(tool_name, args, result_summary, record_id, success)
    except Exception as e:
        logger.warning(f"Failed to log command {tool_name}: {e}")
