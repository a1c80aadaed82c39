"""
Storage backends for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

from .embeddings import (
    EmbeddingProvider,
    EmbeddingProviderError,
    OpenAIEmbeddingProvider,
    SentenceTransformerProvider,
    create_embedding_provider,
)
from .sqlite_store import SQLiteStore

__all__ = [
    'EmbeddingProvider',
    'EmbeddingProviderError',
    'OpenAIEmbeddingProvider',
    'SentenceTransformerProvider',
    'create_embedding_provider',
    'SQLiteStore',
]
