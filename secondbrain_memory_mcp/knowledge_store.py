"""
Knowledge store for SecondBrain Memory System
Copyright 2025 Jurden Bruce

Wires SQLite, the embedding provider, the embedding store and the ranker
together and exposes the capture, search and maintenance operations used by
the MCP tools.
"""

import asyncio
import logging
import sqlite3
import threading
import time
import traceback
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import EmbeddingCache
from .config import load_config, db_path
from .embedding_store import EmbeddingStore
from .models import (
    SessionContext,
    SOURCE_COLLECTIONS,
    EMBEDDING_POLICIES,
    compose_embedding_text,
    record_title,
    record_body,
)
from .ranker import (
    SimilarityRanker,
    DEFAULT_THRESHOLD,
    WORKFLOW_THRESHOLD,
    DEFAULT_LIMIT,
    DEFAULT_RECENCY_WEIGHT,
    DEFAULT_IMPORTANCE_WEIGHT,
    DEFAULT_DECAY_DAYS,
)
from .similarity import is_valid_vector
from .storage.embeddings import EmbeddingProvider, create_embedding_provider
from .storage.sqlite_store import SQLiteStore
from .utils import register_sqlite_adapters, hash_content, days_since, preview

logger = logging.getLogger("secondbrain-memory.store")

OBSERVATION_TYPES = ("discovery", "pattern", "insight", "note")
OBSERVATION_CATEGORIES = ("architecture", "code", "performance", "security", "testing", "devops", "other")
ERROR_TYPES = ("runtime", "compile", "logic", "performance", "security", "other")
LANGUAGES = ("typescript", "javascript", "python", "go", "rust", "java", "sql", "bash", "other")
PATTERN_CATEGORIES = ("design", "architecture", "testing", "deployment", "refactoring", "other")
PREFERENCE_CATEGORIES = ("coding_style", "tools", "workflow", "communication", "other")
PROJECT_STATUSES = ("active", "paused", "archived")
CONTEXT_SECTIONS = ("tech_stack", "recent_decisions", "recent_bugs", "patterns", "preferences")

# Fields matched by keyword search, per collection
KEYWORD_SEARCH_FIELDS = {
    "observations": ("title", "content"),
    "decisions": ("title", "context", "rationale"),
    "bugs_and_fixes": ("error_message", "solution", "root_cause"),
    "patterns": ("name", "problem", "solution"),
    "code_snippets": ("title", "description", "code"),
}

MAX_WORKFLOW_RESULTS = 10


def _require(value: Any, name: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{name} is required")


def _check_choice(value: Optional[str], choices, name: str):
    if value is not None and value not in choices:
        raise ValueError(f"Invalid {name} '{value}' (expected one of: {', '.join(choices)})")


class KnowledgeStore:
    def __init__(self, config: Optional[Dict[str, Any]] = None, provider: Optional[EmbeddingProvider] = None):
        self.config = config if config is not None else load_config()
        self.base_path = Path(self.config["data_dir"])
        self.db_path = db_path(self.config)

        self.db_conn = None
        self._db_lock = threading.RLock()

        self.error_log: List[Dict[str, Any]] = []
        self.embedding_cache = EmbeddingCache(maxsize=self.config.get("cache_maxsize", 1000))

        self.sqlite_store: Optional[SQLiteStore] = None
        self.provider = provider
        self.embedding_store: Optional[EmbeddingStore] = None
        self.ranker: Optional[SimilarityRanker] = None

        self.initialize()

    def initialize(self):
        """Initialize all backends"""
        init_start = time.perf_counter()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)

            step_start = time.perf_counter()
            self._init_sqlite()
            logger.info(f"[TIMING] SQLite initialized in {(time.perf_counter() - step_start)*1000:.2f}ms")

            if self.provider is None:
                self.provider = create_embedding_provider(self.config, self.embedding_cache, self.error_log)
            logger.info(f"Embedding provider: {self.provider.provider_name} ({self.provider.model_name})")

            self.embedding_store = EmbeddingStore(self.sqlite_store, self.provider, self.error_log)
            self.ranker = SimilarityRanker(self.sqlite_store, self.provider)

            total_time = (time.perf_counter() - init_start) * 1000
            logger.info(f"[TIMING] KnowledgeStore initialized in {total_time:.2f}ms total")
        except Exception as e:
            logger.error(f"Initialization failed: {e}")
            self._log_error("initialization", e)
            raise

    def _init_sqlite(self):
        """Open the shared connection and create the schema"""
        register_sqlite_adapters()
        self.db_conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=30.0,
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES
        )
        self.db_conn.row_factory = sqlite3.Row
        self.sqlite_store = SQLiteStore(self.db_path, self.db_conn, self._db_lock, self.error_log)
        self.sqlite_store.initialize()

    def _log_error(self, operation: str, error: Exception):
        """Log detailed error information"""
        error_entry = {
            "timestamp": datetime.now().isoformat(),
            "operation": operation,
            "error_type": type(error).__name__,
            "error_msg": str(error),
            "traceback": traceback.format_exc(),
        }
        self.error_log.append(error_entry)
        if len(self.error_log) > 100:
            del self.error_log[:-100]

    # ===== PROJECTS =====

    async def find_project(self, name: str) -> Optional[str]:
        """Project id by name, None if unknown"""
        project = await asyncio.to_thread(self.sqlite_store.find_first, "projects", {"name": name})
        return project["id"] if project else None

    async def get_or_create_project(self, name: Optional[str]) -> Optional[str]:
        """Project id by name, creating the project on first use"""
        if not name:
            return None

        project_id = await self.find_project(name)
        if project_id:
            return project_id

        try:
            created = await asyncio.to_thread(
                self.sqlite_store.create_record, "projects", {"name": name, "status": "active"}
            )
        except sqlite3.IntegrityError:
            # Created concurrently by another call
            return await self.find_project(name)

        logger.info(f"Created new project: {name}")
        return created["id"]

    async def save_project(
        self,
        name: str,
        description: Optional[str] = None,
        tech_stack: Optional[List[str]] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a project or update its description, tech stack and status"""
        _require(name, "name")
        _check_choice(status, PROJECT_STATUSES, "project status")

        project_id = await self.get_or_create_project(name)
        fields = {}
        if description is not None:
            fields["description"] = description
        if tech_stack is not None:
            fields["tech_stack"] = tech_stack
        if status is not None:
            fields["status"] = status
        if fields:
            await asyncio.to_thread(self.sqlite_store.update_record, "projects", project_id, fields)

        logger.info(f"Saved project: {name}")
        return {"success": True, "id": project_id, "message": f'Project "{name}" saved'}

    async def get_project_context(self, project: str, include: Optional[List[str]] = None,
                                  limit: int = 5) -> Dict[str, Any]:
        """Project details plus its recent decisions, bugs, patterns and the user's preferences"""
        _require(project, "project")
        include = include or list(CONTEXT_SECTIONS)
        unknown = [section for section in include if section not in CONTEXT_SECTIONS]
        if unknown:
            raise ValueError(f"Unknown context sections: {', '.join(unknown)}")
        if not 1 <= limit <= 20:
            raise ValueError("limit must be between 1 and 20")

        context = {
            "project": None,
            "recent_decisions": [],
            "recent_bugs": [],
            "patterns_used": [],
            "preferences": [],
        }

        record = await asyncio.to_thread(self.sqlite_store.find_first, "projects", {"name": project})
        if record is None:
            return {**context, "message": f'Project "{project}" not found'}

        context["project"] = {
            "name": record["name"],
            "description": record.get("description") or "",
            "status": record.get("status") or "active",
        }
        if "tech_stack" in include:
            context["project"]["tech_stack"] = record.get("tech_stack") or []

        where = {"project": record["id"]}

        if "recent_decisions" in include:
            decisions = await asyncio.to_thread(
                self.sqlite_store.list_records, "decisions", where, "created DESC", limit
            )
            context["recent_decisions"] = [
                {"title": d["title"], "chosen": d["chosen"], "rationale": d["rationale"], "created": d["created"]}
                for d in decisions
            ]

        if "recent_bugs" in include:
            bugs = await asyncio.to_thread(
                self.sqlite_store.list_records, "bugs_and_fixes", where, "created DESC", limit
            )
            context["recent_bugs"] = [
                {
                    "error_type": b["error_type"],
                    "error_message": preview(b["error_message"], 100),
                    "solution": preview(b["solution"], 200),
                    "created": b["created"],
                }
                for b in bugs
            ]

        if "patterns" in include:
            observations = await asyncio.to_thread(
                self.sqlite_store.list_records, "observations", {**where, "type": "pattern"}, "created DESC", limit
            )
            context["patterns_used"] = [
                {"name": o["title"], "category": o.get("category") or "other"} for o in observations
            ]

        if "preferences" in include:
            preferences = await self._sorted_preferences()
            context["preferences"] = [
                {"category": p["category"], "preference": p["preference"]} for p in preferences[:limit]
            ]

        return context

    # ===== PREFERENCES =====

    async def _sorted_preferences(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """Preferences, strongest first, newest first among equals"""
        where = {"category": category} if category else None
        preferences = await asyncio.to_thread(self.sqlite_store.list_records, "user_preferences", where)
        return sorted(
            preferences,
            key=lambda p: (p.get("strength") or 0, p.get("created") or datetime.min),
            reverse=True,
        )

    async def save_preference(
        self,
        category: str,
        preference: str,
        reason: Optional[str] = None,
        examples: Optional[List[str]] = None,
        strength: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Save a preference, or update the one it matches

        A preference matches an existing one in the same category when its
        first 50 characters appear in it (case-insensitive). Examples are
        appended on update.
        """
        _check_choice(category, PREFERENCE_CATEGORIES, "preference category")
        _require(category, "category")
        _require(preference, "preference")
        if strength is not None and not 1 <= strength <= 5:
            raise ValueError("strength must be between 1 and 5")

        prefix = preference[:50].lower()
        candidates = await asyncio.to_thread(
            self.sqlite_store.list_records, "user_preferences", {"category": category}, "created ASC"
        )
        existing = next((p for p in candidates if prefix in p["preference"].lower()), None)

        if existing:
            await asyncio.to_thread(self.sqlite_store.update_record, "user_preferences", existing["id"], {
                "reason": reason or existing.get("reason"),
                "examples": (existing.get("examples") or []) + (examples or []),
                "strength": strength or existing.get("strength"),
            })
            logger.info(f"Updated preference: {preference[:50]}")
            return {"success": True, "id": existing["id"], "message": "Preference updated"}

        record = await asyncio.to_thread(self.sqlite_store.create_record, "user_preferences", {
            "category": category,
            "preference": preference,
            "reason": reason,
            "examples": examples or [],
            "strength": strength or 3,
        })
        logger.info(f"Saved preference: {preference[:50]}")
        return {"success": True, "id": record["id"], "message": "Preference saved"}

    async def get_preferences(self, category: Optional[str] = None) -> Dict[str, Any]:
        """Preferences in a category ('all' or None for every category)"""
        if category == "all":
            category = None
        _check_choice(category, PREFERENCE_CATEGORIES, "preference category")

        preferences = await self._sorted_preferences(category)
        return {
            "total": len(preferences),
            "preferences": [
                {
                    "id": p["id"],
                    "category": p["category"],
                    "preference": p["preference"],
                    "reason": p.get("reason"),
                    "examples": p.get("examples") or [],
                    "strength": p.get("strength"),
                }
                for p in preferences
            ],
        }

    # ===== CAPTURE =====

    async def _capture(self, source_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Write the primary record, then embed it in the background"""
        collection = SOURCE_COLLECTIONS[source_type]
        record = await asyncio.to_thread(self.sqlite_store.create_record, collection, data)

        text = compose_embedding_text(source_type, record)
        self.embedding_store.save_async(source_type, record["id"], text, EMBEDDING_POLICIES[source_type])
        return record

    @staticmethod
    def _capture_response(record: Dict[str, Any], message: str) -> Dict[str, Any]:
        created = record.get("created")
        return {
            "success": True,
            "id": record["id"],
            "created": created.isoformat() if isinstance(created, datetime) else created,
            "message": message,
        }

    async def capture_observation(
        self,
        title: str,
        content: str,
        type: str,
        category: Optional[str] = None,
        project: Optional[str] = None,
        files: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        importance: Optional[int] = None,
        context: Optional[SessionContext] = None,
    ) -> Dict[str, Any]:
        """Capture an observation, discovery, pattern or insight"""
        _require(title, "title")
        _require(content, "content")
        _check_choice(type, OBSERVATION_TYPES, "observation type")
        _check_choice(category, OBSERVATION_CATEGORIES, "category")
        if importance is not None and not 1 <= importance <= 5:
            raise ValueError("importance must be between 1 and 5")

        context = context or SessionContext()
        project_id = await self.get_or_create_project(project or context.project)

        record = await self._capture("observation", {
            "session": context.session_id,
            "project": project_id,
            "type": type,
            "category": category,
            "title": title,
            "content": content,
            "files": files or [],
            "tags": tags or [],
            "importance": importance or 3,
        })

        logger.info(f"Captured observation: {title}")
        return self._capture_response(record, f'Observation "{title}" captured successfully')

    async def capture_decision(
        self,
        title: str,
        context_text: str,
        chosen: str,
        rationale: str,
        options: Optional[List[str]] = None,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
        context: Optional[SessionContext] = None,
    ) -> Dict[str, Any]:
        """Capture a decision with its context and rationale"""
        _require(title, "title")
        _require(context_text, "context")
        _require(chosen, "chosen")
        _require(rationale, "rationale")

        context = context or SessionContext()
        project_id = await self.get_or_create_project(project or context.project)

        record = await self._capture("decision", {
            "session": context.session_id,
            "project": project_id,
            "title": title,
            "context": context_text,
            "options": options or [],
            "chosen": chosen,
            "rationale": rationale,
            "tags": tags or [],
        })

        logger.info(f"Captured decision: {title}")
        return self._capture_response(record, f'Decision "{title}" captured successfully')

    async def capture_bug(
        self,
        error_type: str,
        error_message: str,
        solution: str,
        root_cause: Optional[str] = None,
        prevention: Optional[str] = None,
        files_affected: Optional[List[str]] = None,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
        context: Optional[SessionContext] = None,
    ) -> Dict[str, Any]:
        """Capture a bug fix"""
        _check_choice(error_type, ERROR_TYPES, "error type")
        _require(error_type, "error_type")
        _require(error_message, "error_message")
        _require(solution, "solution")

        context = context or SessionContext()
        project_id = await self.get_or_create_project(project or context.project)

        record = await self._capture("bug", {
            "session": context.session_id,
            "project": project_id,
            "error_type": error_type,
            "error_message": error_message,
            "root_cause": root_cause,
            "solution": solution,
            "prevention": prevention,
            "files_affected": files_affected or [],
            "tags": tags or [],
        })

        logger.info(f"Captured bug fix: {error_message[:50]}...")
        return self._capture_response(record, "Bug fix captured successfully")

    async def save_snippet(
        self,
        title: str,
        language: str,
        code: str,
        description: Optional[str] = None,
        use_cases: Optional[List[str]] = None,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
        context: Optional[SessionContext] = None,
    ) -> Dict[str, Any]:
        """Save a reusable code snippet"""
        _require(title, "title")
        _check_choice(language, LANGUAGES, "language")
        _require(language, "language")
        _require(code, "code")

        context = context or SessionContext()
        project_id = await self.get_or_create_project(project or context.project)

        record = await self._capture("snippet", {
            "session": context.session_id,
            "project": project_id,
            "title": title,
            "language": language,
            "code": code,
            "description": description,
            "use_cases": use_cases or [],
            "tags": tags or [],
            "reuse_count": 0,
        })

        logger.info(f"Saved snippet: {title}")
        return self._capture_response(record, f'Snippet "{title}" saved successfully')

    async def capture_pattern(
        self,
        name: str,
        category: str,
        problem: str,
        solution: str,
        example_code: Optional[str] = None,
        when_to_use: Optional[List[str]] = None,
        when_not_to_use: Optional[List[str]] = None,
        related_patterns: Optional[List[str]] = None,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Capture a reusable design/architecture pattern"""
        _require(name, "name")
        _check_choice(category, PATTERN_CATEGORIES, "pattern category")
        _require(category, "category")
        _require(problem, "problem")
        _require(solution, "solution")

        project_id = await self.get_or_create_project(project)

        record = await self._capture("pattern", {
            "project": project_id,
            "name": name,
            "category": category,
            "problem": problem,
            "solution": solution,
            "example_code": example_code,
            "when_to_use": when_to_use or [],
            "when_not_to_use": when_not_to_use or [],
            "related_patterns": related_patterns or [],
            "tags": tags or [],
        })

        logger.info(f"Captured pattern: {name}")
        return self._capture_response(record, f'Pattern "{name}" captured successfully')

    # ===== DECISION OUTCOMES =====

    async def record_decision_outcome(
        self,
        decision_id: str,
        outcome: str,
        would_do_again: bool,
        outcome_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record what actually happened after a decision was made"""
        _require(outcome, "outcome")

        decision = await asyncio.to_thread(self.sqlite_store.get_record, "decisions", decision_id)
        if decision is None:
            raise ValueError(f"Decision not found: {decision_id}")

        recorded_at = datetime.now()
        await asyncio.to_thread(self.sqlite_store.update_record, "decisions", decision_id, {
            "outcome": outcome,
            "would_do_again": would_do_again,
            "outcome_notes": outcome_notes or "",
            "outcome_recorded_at": recorded_at,
        })

        if not would_do_again:
            logger.info(f'Decision "{decision["title"]}" marked as would NOT do again - consider review')
        logger.info(f"Recorded outcome for decision: {decision['title']}")

        return {
            "success": True,
            "id": decision_id,
            "title": decision["title"],
            "outcome_recorded_at": recorded_at.isoformat(),
            "would_do_again": would_do_again,
            "message": f'Outcome recorded for decision "{decision["title"]}"',
        }

    async def get_pending_outcomes(self, project: Optional[str] = None, days_old: int = 7,
                                   limit: int = 10) -> Dict[str, Any]:
        """Decisions older than days_old that still have no outcome"""
        if not 1 <= days_old <= 90:
            raise ValueError("days_old must be between 1 and 90")
        if not 1 <= limit <= 20:
            raise ValueError("limit must be between 1 and 20")

        where = {}
        project_names = {}
        if project:
            project_id = await self.find_project(project)
            if project_id is None:
                return {"total": 0, "pending_outcomes": [], "message": f'Project "{project}" not found'}
            where["project"] = project_id
            project_names[project_id] = project

        decisions = await asyncio.to_thread(
            self.sqlite_store.list_records, "decisions", where, "created ASC"
        )

        now = datetime.now()
        pending = [
            d for d in decisions
            if not d.get("outcome") and days_since(d.get("created"), now) >= days_old
        ]

        results = []
        for d in pending[:limit]:
            project_name = None
            if d.get("project"):
                if d["project"] not in project_names:
                    owner = await asyncio.to_thread(self.sqlite_store.get_record, "projects", d["project"])
                    project_names[d["project"]] = owner["name"] if owner else None
                project_name = project_names[d["project"]]
            results.append({
                "id": d["id"],
                "title": d["title"],
                "chosen": d["chosen"],
                "project": project_name,
                "created": d["created"],
                "days_since": days_since(d["created"], now),
            })

        logger.info(f"Found {len(pending)} decisions pending outcome tracking")
        return {
            "total": len(pending),
            "showing": len(results),
            "days_old_filter": days_old,
            "pending_outcomes": results,
        }

    # ===== WORKFLOWS =====

    @staticmethod
    def _validate_steps(steps: List[Dict[str, Any]]):
        if not steps:
            raise ValueError("steps must contain at least one step")
        for index, step in enumerate(steps):
            if not isinstance(step, dict):
                raise ValueError(f"step {index} must be an object")
            if not isinstance(step.get("order"), (int, float)) or isinstance(step.get("order"), bool):
                raise ValueError(f"step {index} needs a numeric 'order'")
            if not isinstance(step.get("action"), str) or not step["action"]:
                raise ValueError(f"step {index} needs an 'action'")
            if not isinstance(step.get("description", ""), str):
                raise ValueError(f"step {index} 'description' must be a string")

    async def save_workflow(
        self,
        name: str,
        trigger: str,
        steps: List[Dict[str, Any]],
        description: Optional[str] = None,
        tools_used: Optional[List[str]] = None,
        estimated_duration: Optional[float] = None,
        success_criteria: Optional[str] = None,
        project: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create or update a workflow (matched by name and project)"""
        _require(name, "name")
        _require(trigger, "trigger")
        self._validate_steps(steps)

        project_id = await self.get_or_create_project(project)
        where = {"name": name}
        if project_id:
            where["project"] = project_id
        existing = await asyncio.to_thread(self.sqlite_store.find_first, "workflows", where)

        workflow_data = {
            "project": project_id,
            "name": name,
            "description": description or "",
            "trigger": trigger,
            "steps": steps,
            "tools_used": tools_used or [],
            "estimated_duration": estimated_duration,
            "success_criteria": success_criteria or "",
            "tags": tags or [],
        }

        if existing:
            record = await asyncio.to_thread(
                self.sqlite_store.update_record, "workflows", existing["id"], workflow_data
            )
            action = "updated"
        else:
            record = await asyncio.to_thread(
                self.sqlite_store.create_record, "workflows", {**workflow_data, "execution_count": 0}
            )
            action = "created"

        # Workflows are edited in place, so the embedding is replaced rather than appended
        text = compose_embedding_text("workflow", record)
        self.embedding_store.save_async("workflow", record["id"], text, EMBEDDING_POLICIES["workflow"])

        logger.info(f'Workflow "{name}" {action}')
        return {
            "success": True,
            "id": record["id"],
            "message": f'Workflow "{name}" {action}',
            "action": action,
        }

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        workflow = await asyncio.to_thread(self.sqlite_store.get_record, "workflows", workflow_id)
        if workflow is None:
            raise ValueError(f"Workflow not found: {workflow_id}")

        project_name = None
        if workflow.get("project"):
            project = await asyncio.to_thread(self.sqlite_store.get_record, "projects", workflow["project"])
            project_name = project["name"] if project else None

        return {
            "id": workflow["id"],
            "name": workflow["name"],
            "project": project_name,
            "description": workflow.get("description"),
            "trigger": workflow["trigger"],
            "steps": workflow.get("steps") or [],
            "tools_used": workflow.get("tools_used") or [],
            "estimated_duration": workflow.get("estimated_duration"),
            "success_criteria": workflow.get("success_criteria"),
            "execution_count": workflow.get("execution_count") or 0,
            "avg_duration": workflow.get("avg_duration"),
            "last_executed": workflow.get("last_executed"),
            "tags": workflow.get("tags") or [],
            "created": workflow["created"],
            "updated": workflow["updated"],
        }

    async def record_workflow_execution(
        self,
        workflow_id: str,
        success: bool,
        duration_minutes: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Bump the execution count and fold the duration into the running average"""
        workflow = await asyncio.to_thread(self.sqlite_store.get_record, "workflows", workflow_id)
        if workflow is None:
            raise ValueError(f"Workflow not found: {workflow_id}")

        current_count = workflow.get("execution_count") or 0
        current_avg = workflow.get("avg_duration") or 0

        new_avg = current_avg
        if duration_minutes is not None:
            if current_count == 0:
                new_avg = duration_minutes
            else:
                new_avg = (current_avg * current_count + duration_minutes) / (current_count + 1)
        new_avg = round(new_avg, 1)

        await asyncio.to_thread(self.sqlite_store.update_record, "workflows", workflow_id, {
            "execution_count": current_count + 1,
            "last_executed": datetime.now(),
            "avg_duration": new_avg,
        })

        logger.info(f'Recorded execution for workflow "{workflow["name"]}" (count: {current_count + 1})')
        if notes:
            logger.debug(f"Execution notes for {workflow_id}: {notes}")

        return {
            "success": True,
            "workflow": workflow["name"],
            "execution_count": current_count + 1,
            "avg_duration": new_avg,
            "was_successful": success,
        }

    async def find_workflow(
        self,
        query: str,
        project: Optional[str] = None,
        limit: int = 5,
        threshold: float = WORKFLOW_THRESHOLD,
        recency_weight: float = DEFAULT_RECENCY_WEIGHT,
        importance_weight: float = DEFAULT_IMPORTANCE_WEIGHT,
        decay_days: float = DEFAULT_DECAY_DAYS,
    ) -> Dict[str, Any]:
        """Semantic lookup of workflows by what the caller wants to do"""
        _require(query, "query")
        if not 1 <= limit <= MAX_WORKFLOW_RESULTS:
            raise ValueError(f"limit must be between 1 and {MAX_WORKFLOW_RESULTS}")

        record_filter = None
        if project:
            project_id = await self.find_project(project)
            if project_id is None:
                return {"query": query, "total": 0, "workflows": []}
            record_filter = lambda record: record.get("project") == project_id

        scores = await self.ranker.search(
            query,
            source_types=["workflow"],
            threshold=threshold,
            limit=limit,
            recency_weight=recency_weight,
            importance_weight=importance_weight,
            decay_days=decay_days,
            record_filter=record_filter,
        )

        workflows = []
        for score in scores:
            workflow = score.record
            workflows.append({
                "id": workflow["id"],
                "name": workflow["name"],
                "trigger": workflow["trigger"],
                "description": preview(workflow.get("description")),
                "steps_count": len(workflow.get("steps") or []),
                "execution_count": workflow.get("execution_count") or 0,
                **{k: v for k, v in score.to_dict().items() if k not in ("source_type", "source_id")},
            })

        return {"query": query, "total": len(workflows), "workflows": workflows}

    # ===== SEARCH =====

    async def semantic_search(
        self,
        query: str,
        source_types: Optional[List[str]] = None,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
        recency_weight: float = DEFAULT_RECENCY_WEIGHT,
        importance_weight: float = DEFAULT_IMPORTANCE_WEIGHT,
        decay_days: float = DEFAULT_DECAY_DAYS,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Rank captured knowledge by similarity, recency and importance

        A query that can't be embedded raises; no matches is an empty result.
        """
        _require(query, "query")

        record_filter = None
        if project:
            project_id = await self.find_project(project)
            if project_id is None:
                return {"query": query, "total": 0, "results": [], "message": f'Project "{project}" not found'}
            record_filter = lambda record: record.get("project") == project_id

        try:
            scores = await self.ranker.search(
                query,
                source_types=source_types,
                threshold=threshold,
                limit=limit,
                recency_weight=recency_weight,
                importance_weight=importance_weight,
                decay_days=decay_days,
                record_filter=record_filter,
            )
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Semantic search failed: {e}")
            self._log_error("semantic_search", e)
            raise

        results = []
        for score in scores:
            scored = score.to_dict()
            results.append({
                "type": score.source_type,
                "id": score.source_id,
                "title": record_title(score.record),
                "content": preview(record_body(score.record)),
                "similarity": scored["similarity"],
                "recency": scored["recency"],
                "importance": scored["importance"],
                "score": scored["score"],
            })

        return {"query": query, "total": len(results), "results": results}

    async def search_knowledge(
        self,
        query: str,
        collections: Optional[List[str]] = None,
        project: Optional[str] = None,
        limit: int = 10,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Case-insensitive keyword search, newest first

        Records are fetched per collection and filtered here rather than with
        OR filters in SQL.
        """
        _require(query, "query")
        if not 1 <= limit <= 50:
            raise ValueError("limit must be between 1 and 50")
        collections = collections or list(KEYWORD_SEARCH_FIELDS)
        unknown = [c for c in collections if c not in KEYWORD_SEARCH_FIELDS]
        if unknown:
            raise ValueError(f"Unknown collections: {', '.join(unknown)}")

        project_id = await self.find_project(project) if project else None
        lower_query = query.lower()
        results = []

        for collection in collections:
            try:
                records = await asyncio.to_thread(self.sqlite_store.list_records, collection)
            except Exception as e:
                logger.error(f"Search failed in {collection}: {e}")
                self._log_error("search_knowledge", e)
                continue

            fields = KEYWORD_SEARCH_FIELDS[collection]
            for record in records:
                if project_id and record.get("project") != project_id:
                    continue
                if tags and not any(tag in (record.get("tags") or []) for tag in tags):
                    continue
                if not any(
                    isinstance(record.get(name), str) and lower_query in record[name].lower()
                    for name in fields
                ):
                    continue

                results.append({
                    "collection": collection,
                    "id": record["id"],
                    "title": record_title(record),
                    "content": preview(record_body(record)),
                    "created": record["created"],
                    "relevance": "keyword-match",
                })

        results.sort(key=lambda r: r["created"] or datetime.min, reverse=True)
        return {"query": query, "total": len(results), "results": results[:limit]}

    # ===== EMBEDDING MAINTENANCE =====

    async def _load_embedding_report(self) -> Dict[str, Any]:
        embeddings = await asyncio.to_thread(self.sqlite_store.list_embeddings)

        invalid = []
        orphaned = []
        model_mismatch = []
        by_source = defaultdict(list)
        owner_exists: Dict[tuple, bool] = {}

        for embedding in embeddings:
            if not is_valid_vector(embedding.vector):
                invalid.append(embedding)
                continue
            if embedding.model != self.provider.model_name:
                model_mismatch.append(embedding)

            key = (embedding.source_type, embedding.source_id)
            if key not in owner_exists:
                collection = SOURCE_COLLECTIONS.get(embedding.source_type)
                owner = None
                if collection:
                    owner = await asyncio.to_thread(self.sqlite_store.get_record, collection, embedding.source_id)
                owner_exists[key] = owner is not None
            if not owner_exists[key]:
                orphaned.append(embedding)
                continue
            by_source[key].append(embedding)

        duplicates = []
        for group in by_source.values():
            if len(group) > 1:
                # Keep the newest, flag the rest
                group.sort(key=lambda e: e.created_at or datetime.min, reverse=True)
                duplicates.extend(group[1:])

        return {
            "embeddings": embeddings,
            "invalid": invalid,
            "orphaned": orphaned,
            "duplicates": duplicates,
            "model_mismatch": model_mismatch,
        }

    async def embedding_health(self) -> Dict[str, Any]:
        """Summarize stored embeddings and flag problems"""
        report = await self._load_embedding_report()
        embeddings = report["embeddings"]

        return {
            "total": len(embeddings),
            "by_type": dict(Counter(e.source_type for e in embeddings)),
            "by_model": dict(Counter(e.model for e in embeddings)),
            "current_model": self.provider.model_name,
            "invalid_vectors": [e.id for e in report["invalid"]],
            "orphaned": [e.id for e in report["orphaned"]],
            "duplicates": [e.id for e in report["duplicates"]],
            "model_mismatch": [e.id for e in report["model_mismatch"]],
            "healthy": not (report["invalid"] or report["orphaned"]
                            or report["duplicates"] or report["model_mismatch"]),
        }

    async def cleanup_embeddings(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete invalid, orphaned and duplicate embeddings"""
        report = await self._load_embedding_report()
        to_delete = report["invalid"] + report["orphaned"] + report["duplicates"]

        deleted = 0
        if not dry_run:
            for embedding in to_delete:
                if await asyncio.to_thread(self.sqlite_store.delete_embedding, embedding.id):
                    deleted += 1
            logger.info(f"Embedding cleanup deleted {deleted} rows")

        return {
            "dry_run": dry_run,
            "invalid": len(report["invalid"]),
            "orphaned": len(report["orphaned"]),
            "duplicates": len(report["duplicates"]),
            "deleted": deleted,
        }

    async def repair_embeddings(self, dry_run: bool = False,
                                source_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Re-embed records with no valid, current embedding

        Runs inline (awaited) rather than fire-and-forget so the caller gets
        real counts back.
        """
        source_types = source_types or list(SOURCE_COLLECTIONS)
        checked = 0
        missing = []
        repaired = 0
        failed = []

        for source_type in source_types:
            if source_type not in SOURCE_COLLECTIONS:
                raise ValueError(f"Unknown source type: {source_type}")
            records = await asyncio.to_thread(self.sqlite_store.list_records, SOURCE_COLLECTIONS[source_type])

            for record in records:
                checked += 1
                text = compose_embedding_text(source_type, record)
                existing = await asyncio.to_thread(self.sqlite_store.find_embedding, source_type, record["id"])
                if (existing is not None
                        and existing.content_hash == hash_content(text)
                        and existing.model == self.provider.model_name
                        and is_valid_vector(existing.vector)):
                    continue

                missing.append(f"{source_type}:{record['id']}")
                if dry_run:
                    continue
                if await self.embedding_store.save(source_type, record["id"], text, on_existing="replace"):
                    repaired += 1
                else:
                    failed.append(f"{source_type}:{record['id']}")

        logger.info(f"Embedding repair: checked={checked} missing={len(missing)} repaired={repaired}")
        return {
            "dry_run": dry_run,
            "checked": checked,
            "missing": len(missing),
            "missing_ids": missing,
            "repaired": repaired,
            "failed": failed,
        }

    # ===== STATS / LIFECYCLE =====

    def get_statistics(self) -> Dict[str, Any]:
        """Record counts, embedding status and recent errors"""
        counts = {}
        for collection in ("projects", "user_preferences") + tuple(SOURCE_COLLECTIONS.values()):
            try:
                counts[collection] = self.sqlite_store.count_records(collection)
            except Exception as e:
                logger.error(f"Failed to count {collection}: {e}")
                counts[collection] = None

        return {
            "database": str(self.db_path),
            "records": counts,
            "embeddings": {
                "stored": self.sqlite_store.count_embeddings(),
                "pending": self.embedding_store.pending_count(),
                **self.embedding_store.stats,
            },
            "provider": self.provider.describe(),
            "recent_errors": [
                {k: v for k, v in entry.items() if k != "traceback"}
                for entry in self.error_log[-10:]
            ],
        }

    async def shutdown(self):
        """Wait for background embeddings, then close the database"""
        logger.info("Shutting down KnowledgeStore...")

        if self.embedding_store:
            pending = self.embedding_store.pending_count()
            if pending:
                logger.info(f"Waiting for {pending} pending embedding(s)")
            await self.embedding_store.wait_for_pending()

        if self.sqlite_store:
            self.sqlite_store.close()

        logger.info("KnowledgeStore shutdown complete")
