"""
Data models for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SOURCE_TYPES = ("observation", "decision", "bug", "snippet", "workflow", "pattern")

# Embedding source type -> SQLite collection holding the owning record
SOURCE_COLLECTIONS = {
    "observation": "observations",
    "decision": "decisions",
    "bug": "bugs_and_fixes",
    "snippet": "code_snippets",
    "workflow": "workflows",
    "pattern": "patterns",
}

# Workflows are edited in place, everything else is append-only
EMBEDDING_POLICIES = {
    "observation": "skip",
    "decision": "skip",
    "bug": "skip",
    "snippet": "skip",
    "workflow": "replace",
    "pattern": "skip",
}

EMBEDDING_POLICY_VALUES = ("skip", "replace")


@dataclass
class SessionContext:
    """Per-request context threaded through capture calls"""
    session_id: Optional[str] = None
    project: Optional[str] = None

    @classmethod
    def from_arguments(cls, arguments: Dict[str, Any]) -> 'SessionContext':
        return cls(
            session_id=arguments.get("session_id"),
            project=arguments.get("project"),
        )


@dataclass
class EmbeddingRecord:
    """Stored vector for one capturable record"""
    id: str
    source_type: str
    source_id: str
    content_hash: str
    vector: Optional[List[float]]
    model: str
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.created_at, str):
            self.created_at = datetime.fromisoformat(self.created_at)

    def dimensions(self) -> int:
        return len(self.vector) if isinstance(self.vector, list) else 0

    def to_dict(self, include_vector: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "content_hash": self.content_hash,
            "model": self.model,
            "dimensions": self.dimensions(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_vector:
            data["vector"] = self.vector
        return data


@dataclass
class SimilarityScore:
    """Ranking result for one candidate; computed per query, never stored"""
    source_type: str
    source_id: str
    raw_similarity: float
    recency_score: float
    importance_score: float
    final_score: float
    record: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self, precision: int = 3) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "source_id": self.source_id,
            "similarity": round(self.raw_similarity, precision),
            "recency": round(self.recency_score, precision),
            "importance": round(self.importance_score, precision),
            "score": round(self.final_score, precision),
        }


def _join(*parts: Optional[str]) -> str:
    return "\n".join(part or "" for part in parts)


def compose_embedding_text(source_type: str, record: Dict[str, Any]) -> str:
    """Build the text that gets embedded for a record

    Each source type has its own composition rule; changing a rule changes
    the content hash and therefore triggers re-embedding.
    """
    if source_type == "observation":
        return _join(record.get("title"), record.get("content"))
    if source_type == "decision":
        return _join(record.get("title"), record.get("context"), record.get("rationale"))
    if source_type == "bug":
        return _join(record.get("error_message"), record.get("solution"), record.get("root_cause"))
    if source_type == "snippet":
        return _join(record.get("title"), record.get("description"), record.get("code"))
    if source_type == "pattern":
        return _join(record.get("name"), record.get("problem"), record.get("solution"))
    if source_type == "workflow":
        steps = record.get("steps") or []
        actions = "\n".join(str(step.get("action", "")) for step in steps if isinstance(step, dict))
        return _join(record.get("name"), record.get("trigger"), record.get("description"), actions)
    raise ValueError(f"Unknown source type: {source_type}")


def record_title(record: Dict[str, Any]) -> str:
    """Display title for any capturable record"""
    error_message = record.get("error_message")
    return (
        record.get("title")
        or record.get("name")
        or (error_message[:50] if error_message else None)
        or "Untitled"
    )


def record_body(record: Dict[str, Any]) -> str:
    """Main text of any capturable record, used for previews"""
    return (
        record.get("content")
        or record.get("solution")
        or record.get("code")
        or record.get("rationale")
        or record.get("description")
        or record.get("trigger")
        or ""
    )
