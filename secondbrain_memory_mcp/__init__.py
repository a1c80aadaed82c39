"""
SecondBrain Memory System
Copyright 2025 Jurden Bruce

Captures observations, decisions, bug fixes, snippets, patterns and workflows,
and finds them again by meaning.
"""

__version__ = "1.0.0"

from .knowledge_store import KnowledgeStore
from .models import EmbeddingRecord, SimilarityScore, SessionContext
from .similarity import cosine_similarity

__all__ = [
    "KnowledgeStore",
    "EmbeddingRecord",
    "SimilarityScore",
    "SessionContext",
    "cosine_similarity",
    "__version__",
]
