"""
Tests for embedding providers: retry policy, caching and factory
"""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from secondbrain_memory_mcp.cache import EmbeddingCache
from secondbrain_memory_mcp.storage.embeddings import (
    EmbeddingProviderError,
    OpenAIEmbeddingProvider,
    SentenceTransformerProvider,
    create_embedding_provider,
    is_retryable_error,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def status_error(cls, status):
    return cls(f"status {status}", response=httpx.Response(status, request=REQUEST), body=None)


class ScriptedEmbeddings:
    """Stands in for client.embeddings: raises queued errors, then succeeds"""

    def __init__(self, errors=(), vector=(0.1, 0.2, 0.3)):
        self.errors = list(errors)
        self.vector = list(vector)
        self.calls = 0

    async def create(self, model, input):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector)])


def make_provider(embeddings, **overrides):
    config = {
        "openai_model": "text-embedding-3-small",
        "embedding_max_retries": 3,
        "embedding_backoff_initial": 0.0,
        "embedding_backoff_max": 0.0,
        "embedding_backoff_factor": 2.0,
        **overrides,
    }
    client = SimpleNamespace(embeddings=embeddings)
    return OpenAIEmbeddingProvider(config, EmbeddingCache(maxsize=10), client=client)


def test_retries_rate_limit_then_succeeds():
    embeddings = ScriptedEmbeddings(errors=[
        status_error(openai.RateLimitError, 429),
        status_error(openai.RateLimitError, 429),
    ])
    provider = make_provider(embeddings)

    vector = asyncio.run(provider.embed("hello"))

    assert vector == [0.1, 0.2, 0.3]
    assert embeddings.calls == 3


def test_retries_server_errors():
    embeddings = ScriptedEmbeddings(errors=[status_error(openai.InternalServerError, 503)])
    provider = make_provider(embeddings)

    asyncio.run(provider.embed("hello"))

    assert embeddings.calls == 2


def test_retries_connection_errors():
    embeddings = ScriptedEmbeddings(errors=[openai.APIConnectionError(request=REQUEST), ConnectionResetError()])
    provider = make_provider(embeddings)

    asyncio.run(provider.embed("hello"))

    assert embeddings.calls == 3


@pytest.mark.parametrize("cls,status", [
    (openai.AuthenticationError, 401),
    (openai.BadRequestError, 400),
])
def test_client_errors_are_not_retried(cls, status):
    embeddings = ScriptedEmbeddings(errors=[status_error(cls, status)])
    provider = make_provider(embeddings)

    with pytest.raises(cls):
        asyncio.run(provider.embed("hello"))

    assert embeddings.calls == 1
    assert provider.error_log[-1]["operation"] == "embed_non_retryable"


def test_exhausted_retries_reraise_last_error():
    embeddings = ScriptedEmbeddings(errors=[status_error(openai.RateLimitError, 429) for _ in range(4)])
    provider = make_provider(embeddings)

    with pytest.raises(openai.RateLimitError):
        asyncio.run(provider.embed("hello"))

    # One initial attempt plus three retries
    assert embeddings.calls == 4


def test_backoff_doubles_and_caps():
    provider = make_provider(ScriptedEmbeddings(), embedding_backoff_initial=1.0, embedding_backoff_max=30.0)

    assert [provider.backoff_delay(n) for n in range(3)] == [1.0, 2.0, 4.0]
    assert provider.backoff_delay(10) == 30.0


def test_is_retryable_error():
    assert is_retryable_error(status_error(openai.RateLimitError, 429))
    assert is_retryable_error(status_error(openai.InternalServerError, 500))
    assert is_retryable_error(openai.APITimeoutError(request=REQUEST))
    assert not is_retryable_error(status_error(openai.NotFoundError, 404))
    assert not is_retryable_error(ValueError("nope"))


def test_embeddings_are_cached_per_text():
    embeddings = ScriptedEmbeddings()
    provider = make_provider(embeddings)

    async def scenario():
        first = await provider.embed("same text")
        second = await provider.embed("same text")
        await provider.embed("other text")
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    assert embeddings.calls == 2
    assert provider.embedding_cache.hits == 1


def test_invalid_vector_is_rejected():
    provider = make_provider(ScriptedEmbeddings(vector=[]))

    with pytest.raises(EmbeddingProviderError):
        asyncio.run(provider.embed("hello"))

    assert len(provider.embedding_cache) == 0


def test_missing_api_key_raises():
    provider = OpenAIEmbeddingProvider({"openai_api_key": ""})

    assert not provider.is_available()
    with pytest.raises(EmbeddingProviderError):
        asyncio.run(provider.embed("hello"))


def test_factory_selects_provider():
    assert isinstance(create_embedding_provider({"embedding_provider": "openai"}), OpenAIEmbeddingProvider)

    local = create_embedding_provider({"embedding_provider": "local", "local_model": "all-MiniLM-L6-v2"})
    assert isinstance(local, SentenceTransformerProvider)
    assert local.model_name == "all-MiniLM-L6-v2"
    # Lazy: nothing loaded until first embed
    assert local.encoder is None

    with pytest.raises(ValueError):
        create_embedding_provider({"embedding_provider": "nope"})


def test_describe_reports_model_and_cache():
    provider = make_provider(ScriptedEmbeddings())
    info = provider.describe()

    assert info["provider"] == "openai"
    assert info["model"] == "text-embedding-3-small"
    assert info["available"] is True
    assert info["cache"]["size"] == 0


def test_concurrent_first_embeds_load_the_local_model_once():
    import time

    import numpy as np

    provider = SentenceTransformerProvider({"local_model": "all-MiniLM-L6-v2"}, EmbeddingCache(maxsize=10))
    loads = []

    class FakeEncoder:
        def encode(self, text):
            return np.array([0.1, 0.2])

    def slow_load():
        loads.append(1)
        time.sleep(0.05)
        provider.encoder = FakeEncoder()
        provider._encoder_initialized = True

    provider._init_encoder = slow_load

    async def scenario():
        return await asyncio.gather(*(provider.embed(f"text {i}") for i in range(4)))

    vectors = asyncio.run(scenario())

    assert len(loads) == 1
    assert all(v == [0.1, 0.2] for v in vectors)
