"""
Tests for MCP tool definitions and dispatch
"""

import asyncio
import json
from datetime import datetime

from secondbrain_memory_mcp.mcp_tools import DateTimeEncoder, get_tool_definitions, handle_tool_call


def call(store, name, arguments=None):
    async def scenario():
        response = await handle_tool_call(name, arguments or {}, store)
        await store.embedding_store.wait_for_pending()
        return response

    [content] = asyncio.run(scenario())
    assert content.type == "text"
    return json.loads(content.text)


def test_tool_definitions_are_unique_and_complete():
    names = [tool.name for tool in get_tool_definitions()]

    assert len(names) == len(set(names))
    assert {
        "capture_observation", "capture_decision", "capture_bug", "save_snippet",
        "capture_pattern", "save_workflow", "get_workflow", "record_workflow_execution",
        "find_workflow", "record_decision_outcome", "get_pending_outcomes",
        "semantic_search", "search_knowledge", "embedding_health", "cleanup_embeddings",
        "repair_embeddings", "save_project", "get_project_context", "save_preference",
        "get_preferences", "get_statistics", "get_command_history",
    } <= set(names)


def test_capture_and_search_through_tools(store, provider):
    provider.vectors["migration"] = [1.0, 0.0, 0.0]

    captured = call(store, "capture_observation", {
        "title": "Migration order",
        "content": "Run migrations before deploying the api",
        "type": "insight",
        "project": "api",
        "session_id": "sess-42",
    })
    found = call(store, "semantic_search", {"query": "migration", "types": ["observation"]})

    assert captured["success"] is True
    assert store.sqlite_store.get_record("observations", captured["id"])["session"] == "sess-42"
    assert found["total"] == 1
    assert found["results"][0]["id"] == captured["id"]


def test_decision_context_argument_maps_to_decision_text(store):
    result = call(store, "capture_decision", {
        "title": "Use queues", "context": "Spiky traffic", "chosen": "SQS", "rationale": "managed",
    })

    assert store.sqlite_store.get_record("decisions", result["id"])["context"] == "Spiky traffic"


def test_workflow_tools(store):
    saved = call(store, "save_workflow", {
        "name": "Hotfix",
        "trigger": "production incident",
        "steps": [{"order": 1, "action": "branch from main", "description": ""}],
    })
    executed = call(store, "record_workflow_execution", {
        "workflow_id": saved["id"], "success": True, "duration_minutes": 20,
    })
    details = call(store, "get_workflow", {"workflow_id": saved["id"]})

    assert executed["execution_count"] == 1
    assert details["avg_duration"] == 20
    # Timestamps come back as ISO strings
    datetime.fromisoformat(details["created"])


def test_errors_become_json_payloads(store):
    result = call(store, "capture_observation", {"title": "t", "content": "c", "type": "rumor"})

    assert result["tool"] == "capture_observation"
    assert result["type"] == "ValueError"
    assert "rumor" in result["error"]


def test_missing_required_argument(store):
    result = call(store, "capture_bug", {"error_type": "runtime"})

    assert result["type"] == "KeyError"


def test_project_context_and_preferences_through_tools(store):
    call(store, "save_project", {"name": "api", "description": "Backend", "tech_stack": ["python"]})
    call(store, "capture_decision", {
        "title": "Use SQLite", "context": "local storage", "chosen": "sqlite",
        "rationale": "zero setup", "project": "api",
    })
    saved = call(store, "save_preference", {"category": "tools", "preference": "pytest over unittest"})
    updated = call(store, "save_preference", {
        "category": "tools", "preference": "pytest", "examples": ["pytest -q"], "strength": 4,
    })

    context = call(store, "get_project_context", {"project": "api", "limit": 3})
    preferences = call(store, "get_preferences", {"category": "all"})
    missing = call(store, "get_project_context", {"project": "nowhere"})

    assert updated["id"] == saved["id"]
    assert context["project"]["tech_stack"] == ["python"]
    assert [d["title"] for d in context["recent_decisions"]] == ["Use SQLite"]
    assert context["preferences"] == [{"category": "tools", "preference": "pytest over unittest"}]
    assert preferences["preferences"][0]["examples"] == ["pytest -q"]
    assert missing["project"] is None

    history = call(store, "get_command_history", {"tool_name": "get_project_context"})
    assert [c["success"] for c in history["commands"]] == [False, True]


def test_unknown_tool(store):
    assert call(store, "delete_everything") == {"error": "Unknown tool: delete_everything"}


def test_calls_are_recorded_in_command_history(store):
    call(store, "capture_pattern", {"name": "CQRS", "category": "architecture", "problem": "p", "solution": "s"})
    call(store, "capture_observation", {"title": "t", "content": "c", "type": "bogus"})

    history = call(store, "get_command_history", {"limit": 10})

    assert history["total"] == 2
    latest, first = history["commands"]
    assert latest["tool_name"] == "capture_observation"
    assert latest["success"] is False
    assert first["tool_name"] == "capture_pattern"
    assert first["success"] is True
    assert first["record_id"] is not None


def test_statistics_tool(store):
    stats = call(store, "get_statistics")

    assert stats["records"]["observations"] == 0
    assert "provider" in stats


def test_datetime_encoder():
    encoded = json.dumps({"at": datetime(2025, 1, 2, 3, 4, 5)}, cls=DateTimeEncoder)
    assert json.loads(encoded) == {"at": "2025-01-02T03:04:05"}
