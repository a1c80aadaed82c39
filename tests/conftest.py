"""
Shared fixtures for SecondBrain Memory System tests
Copyright 2025 Jurden Bruce
"""

import uuid
from datetime import datetime

import pytest

from secondbrain_memory_mcp.cache import EmbeddingCache
from secondbrain_memory_mcp.config import load_config
from secondbrain_memory_mcp.knowledge_store import KnowledgeStore
from secondbrain_memory_mcp.models import EmbeddingRecord
from secondbrain_memory_mcp.storage.embeddings import EmbeddingProvider, EmbeddingProviderError


DEFAULT_VECTOR = [0.0, 0.0, 1.0]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider: returns the vector of the first key found in the text"""

    provider_name = "fake"

    def __init__(self, vectors=None, model="fake-embed", default=None):
        super().__init__({"cache_maxsize": 100}, EmbeddingCache(maxsize=100))
        self.vectors = dict(vectors or {})
        self.model = model
        self.default = list(default or DEFAULT_VECTOR)
        self.calls = []
        self.fail = False

    @property
    def model_name(self):
        return self.model

    async def _embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("provider unavailable")
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return list(self.default)


@pytest.fixture
def config(tmp_path):
    return load_config({
        "data_dir": tmp_path / "data",
        "db_name": "test.db",
        "embedding_provider": "openai",
        "openai_api_key": "",
        "cache_maxsize": 100,
    })


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def store(config, provider):
    knowledge_store = KnowledgeStore(config, provider=provider)
    yield knowledge_store
    knowledge_store.sqlite_store.close()


@pytest.fixture
def sqlite_store(store):
    return store.sqlite_store


def add_embedding(sqlite_store, source_type, source_id, vector, model="fake-embed",
                  content_hash="manual", created_at=None):
    """Insert an embedding row directly, bypassing the provider"""
    record = EmbeddingRecord(
        id=str(uuid.uuid4()),
        source_type=source_type,
        source_id=source_id,
        content_hash=content_hash,
        vector=vector,
        model=model,
        created_at=created_at or datetime.now(),
    )
    sqlite_store.create_embedding(record)
    return record


def add_observation(sqlite_store, title="Observation", content="Body", created=None, importance=3, **extra):
    """Insert an observation row directly with a chosen creation time"""
    data = {
        "type": "note",
        "title": title,
        "content": content,
        "importance": importance,
        **extra,
    }
    if created is not None:
        data["created"] = created
    return sqlite_store.create_record("observations", data)
