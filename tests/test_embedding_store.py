"""
Tests for embedding persistence: skip/replace policies and background saves
"""

import asyncio

import pytest

from secondbrain_memory_mcp.utils import hash_content

from conftest import add_embedding


def test_skip_policy_embeds_identical_text_once(store, provider):
    async def scenario():
        first = await store.embedding_store.save("observation", "obs-1", "same text", "skip")
        second = await store.embedding_store.save("observation", "obs-1", "same text", "skip")
        return first, second

    first, second = asyncio.run(scenario())

    assert (first, second) == (True, False)
    assert provider.calls == ["same text"]
    assert store.sqlite_store.count_embeddings() == 1
    assert store.embedding_store.stats["skipped"] == 1


def test_skip_policy_replaces_stale_embedding(store):
    async def scenario():
        await store.embedding_store.save("observation", "obs-1", "old text", "skip")
        await store.embedding_store.save("observation", "obs-1", "new text", "skip")

    asyncio.run(scenario())

    embeddings = store.sqlite_store.list_embeddings()
    assert len(embeddings) == 1
    assert embeddings[0].content_hash == hash_content("new text")


def test_replace_policy_keeps_only_latest(store, provider):
    async def scenario():
        for text in ("v1", "v2", "v2"):
            await store.embedding_store.save("workflow", "wf-1", text, "replace")

    asyncio.run(scenario())

    embeddings = store.sqlite_store.list_embeddings()
    assert len(embeddings) == 1
    assert embeddings[0].content_hash == hash_content("v2")
    # Replace always writes, the cache absorbs the repeated text
    assert store.embedding_store.stats["saved"] == 3


def test_skip_recomputes_when_stored_vector_is_invalid(store, provider):
    add_embedding(store.sqlite_store, "observation", "obs-1", [], content_hash=hash_content("text"))

    saved = asyncio.run(store.embedding_store.save("observation", "obs-1", "text", "skip"))

    assert saved is True
    embeddings = store.sqlite_store.list_embeddings()
    assert len(embeddings) == 1
    assert embeddings[0].vector == provider.default


def test_skip_recomputes_when_model_changed(store, provider):
    add_embedding(store.sqlite_store, "observation", "obs-1", [1.0, 0.0, 0.0],
                  model="old-model", content_hash=hash_content("text"))

    saved = asyncio.run(store.embedding_store.save("observation", "obs-1", "text", "skip"))

    assert saved is True
    embeddings = store.sqlite_store.list_embeddings()
    assert [e.model for e in embeddings] == ["fake-embed"]


def test_provider_failure_keeps_previous_embedding(store, provider):
    async def scenario():
        await store.embedding_store.save("decision", "dec-1", "first", "replace")
        provider.fail = True
        return await store.embedding_store.save("decision", "dec-1", "second", "replace")

    saved = asyncio.run(scenario())

    assert saved is False
    embeddings = store.sqlite_store.list_embeddings()
    assert len(embeddings) == 1
    assert embeddings[0].content_hash == hash_content("first")
    assert store.embedding_store.stats["failed"] == 1
    assert store.error_log[-1]["operation"] == "save_embedding"


def test_save_async_runs_in_background(store):
    async def scenario():
        task = store.embedding_store.save_async("bug", "bug-1", "traceback text")
        assert store.embedding_store.pending_count() == 1
        await store.embedding_store.wait_for_pending()
        return task.result()

    assert asyncio.run(scenario()) is True
    assert store.embedding_store.pending_count() == 0
    assert store.sqlite_store.find_embedding("bug", "bug-1") is not None


def test_save_async_failure_does_not_raise(store, provider):
    provider.fail = True

    async def scenario():
        task = store.embedding_store.save_async("bug", "bug-1", "text")
        await store.embedding_store.wait_for_pending()
        return task.result()

    assert asyncio.run(scenario()) is False
    assert store.sqlite_store.count_embeddings() == 0


@pytest.mark.parametrize("source_type,policy", [
    ("observation", "overwrite"),
    ("memory", "skip"),
])
def test_invalid_arguments_raise(store, source_type, policy):
    with pytest.raises(ValueError):
        asyncio.run(store.embedding_store.save(source_type, "x", "text", policy))


def test_skip_compares_against_newest_embedding_only(store, provider):
    from datetime import datetime, timedelta

    then = datetime.now() - timedelta(days=2)
    add_embedding(store.sqlite_store, "observation", "obs-1", [1.0, 0.0, 0.0],
                  content_hash=hash_content("A"), created_at=then)
    add_embedding(store.sqlite_store, "observation", "obs-1", [0.0, 1.0, 0.0],
                  content_hash=hash_content("B"), created_at=then + timedelta(days=1))

    saved = asyncio.run(store.embedding_store.save("observation", "obs-1", "A", "skip"))

    assert saved is True
    assert provider.calls == ["A"]
    embeddings = store.sqlite_store.list_embeddings()
    assert len(embeddings) == 1
    assert embeddings[0].content_hash == hash_content("A")
