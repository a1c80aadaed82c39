"""
Tests for similarity ranking: scoring components and end-to-end ordering
"""

import asyncio
import math
from datetime import datetime, timedelta

import pytest

from secondbrain_memory_mcp.ranker import (
    importance_score,
    recency_score,
    similarity_weight,
)
from secondbrain_memory_mcp.storage.embeddings import EmbeddingProviderError

from conftest import add_embedding, add_observation

NOW = datetime(2025, 6, 1, 12, 0, 0)
QUERY_VECTOR = [1.0, 0.0, 0.0]


@pytest.fixture
def ranker(store, provider):
    provider.vectors["query"] = QUERY_VECTOR
    return store.ranker


def search(ranker, **kwargs):
    kwargs.setdefault("now", NOW)
    return asyncio.run(ranker.search("query", **kwargs))


def test_newer_records_rank_first_when_similarity_ties(ranker, sqlite_store):
    ids = {}
    for age in (60, 1, 15):
        obs = add_observation(sqlite_store, title=f"{age} days", created=NOW - timedelta(days=age))
        add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])
        ids[obs["id"]] = age

    results = search(ranker, decay_days=30)

    assert [ids[r.source_id] for r in results] == [1, 15, 60]
    assert all(r.raw_similarity == pytest.approx(1.0) for r in results)


def test_threshold_applies_to_raw_similarity(ranker, sqlite_store):
    strong = add_observation(sqlite_store, title="strong", created=NOW)
    weak = add_observation(sqlite_store, title="weak", created=NOW)
    add_embedding(sqlite_store, "observation", strong["id"], [0.9, math.sqrt(1 - 0.81), 0.0])
    add_embedding(sqlite_store, "observation", weak["id"], [0.75, math.sqrt(1 - 0.5625), 0.0])

    results = search(ranker, threshold=0.8)

    assert [r.source_id for r in results] == [strong["id"]]
    assert results[0].raw_similarity == pytest.approx(0.9)


def test_final_score_blends_components(ranker, sqlite_store):
    obs = add_observation(sqlite_store, created=NOW - timedelta(days=30), importance=5)
    add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])

    [result] = search(ranker, recency_weight=0.3, importance_weight=0.2, decay_days=30)

    assert result.recency_score == pytest.approx(math.exp(-1))
    assert result.importance_score == pytest.approx(1.0)
    assert result.final_score == pytest.approx(0.5 * 1.0 + 0.3 * math.exp(-1) + 0.2 * 1.0)


def test_invalid_and_empty_vectors_are_skipped(ranker, sqlite_store):
    good = add_observation(sqlite_store, title="good", created=NOW)
    empty = add_observation(sqlite_store, title="empty", created=NOW)
    missing = add_observation(sqlite_store, title="missing", created=NOW)
    add_embedding(sqlite_store, "observation", good["id"], [1.0, 0.0, 0.0])
    add_embedding(sqlite_store, "observation", empty["id"], [])
    add_embedding(sqlite_store, "observation", missing["id"], None)

    results = search(ranker, threshold=0.0)

    assert [r.source_id for r in results] == [good["id"]]


def test_zero_vector_never_passes_threshold(ranker, sqlite_store):
    obs = add_observation(sqlite_store, created=NOW)
    add_embedding(sqlite_store, "observation", obs["id"], [0.0, 0.0, 0.0])

    assert search(ranker, threshold=0.0) == []


def test_dimension_mismatch_is_skipped(ranker, sqlite_store):
    short = add_observation(sqlite_store, title="short", created=NOW)
    ok = add_observation(sqlite_store, title="ok", created=NOW)
    add_embedding(sqlite_store, "observation", short["id"], [1.0, 0.0])
    add_embedding(sqlite_store, "observation", ok["id"], [1.0, 0.0, 0.0])

    results = search(ranker)

    assert [r.source_id for r in results] == [ok["id"]]


def test_embeddings_from_other_models_are_skipped(ranker, sqlite_store):
    obs = add_observation(sqlite_store, created=NOW)
    add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0], model="other-model")

    assert search(ranker) == []


def test_deleted_owner_is_skipped(ranker, sqlite_store):
    obs = add_observation(sqlite_store, created=NOW)
    add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])
    add_embedding(sqlite_store, "observation", "no-such-record", [1.0, 0.0, 0.0])

    results = search(ranker)

    assert [r.source_id for r in results] == [obs["id"]]


def test_duplicate_embeddings_keep_best_similarity(ranker, sqlite_store):
    obs = add_observation(sqlite_store, created=NOW)
    add_embedding(sqlite_store, "observation", obs["id"], [0.8, 0.6, 0.0])
    add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])

    results = search(ranker)

    assert len(results) == 1
    assert results[0].raw_similarity == pytest.approx(1.0)


def test_source_type_filter_and_limit(ranker, sqlite_store):
    for i in range(4):
        obs = add_observation(sqlite_store, title=f"obs {i}", created=NOW)
        add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])
    decision = sqlite_store.create_record("decisions", {
        "title": "Use SQLite", "context": "ctx", "chosen": "sqlite", "rationale": "simple", "created": NOW,
    })
    add_embedding(sqlite_store, "decision", decision["id"], [1.0, 0.0, 0.0])

    decisions = search(ranker, source_types=["decision"])
    limited = search(ranker, limit=2)

    assert [r.source_type for r in decisions] == ["decision"]
    assert len(limited) == 2


def test_record_filter_is_applied(ranker, sqlite_store):
    keep = add_observation(sqlite_store, title="keep", created=NOW, project="p1")
    drop = add_observation(sqlite_store, title="drop", created=NOW, project="p2")
    for obs in (keep, drop):
        add_embedding(sqlite_store, "observation", obs["id"], [1.0, 0.0, 0.0])

    results = search(ranker, record_filter=lambda record: record.get("project") == "p1")

    assert [r.source_id for r in results] == [keep["id"]]


def test_query_embedding_failure_propagates(ranker, provider):
    provider.fail = True

    with pytest.raises(EmbeddingProviderError):
        search(ranker)


def test_no_embeddings_returns_empty_list(ranker):
    assert search(ranker) == []


@pytest.mark.parametrize("kwargs", [
    {"threshold": 1.5},
    {"limit": 0},
    {"limit": 21},
    {"recency_weight": -0.1},
    {"decay_days": 0},
    {"source_types": ["memory"]},
])
def test_invalid_parameters_raise(ranker, kwargs):
    with pytest.raises(ValueError):
        search(ranker, **kwargs)


def test_similarity_weight_sums_to_one():
    assert similarity_weight(0.3, 0.2) == pytest.approx(0.5)
    assert similarity_weight(0.0, 0.0) == 1.0


def test_similarity_weight_clamps_at_zero():
    assert similarity_weight(0.8, 0.7) == 0.0


def test_recency_decays_monotonically():
    scores = [recency_score(age, 30) for age in (0, 1, 15, 60, 365)]

    assert scores[0] == 1.0
    assert scores == sorted(scores, reverse=True)
    assert all(0 < s <= 1 for s in scores)


def test_recency_stays_positive_for_ancient_records():
    assert recency_score(10 ** 9, 1) > 0


def test_future_records_count_as_new():
    assert recency_score(-5, 30) == 1.0


def test_importance_heuristics():
    assert importance_score("observation", {"importance": 5}) == 1.0
    assert importance_score("observation", {"importance": 1}) == 0.0
    assert importance_score("observation", {"importance": 3}) == 0.5
    assert importance_score("pattern", {}) == 0.5
    assert importance_score("decision", {"outcome": "worked well"}) == 0.8
    assert importance_score("decision", {"outcome": None}) == 0.5
    assert importance_score("workflow", {"execution_count": 0}) == pytest.approx(0.3)
    assert importance_score("workflow", {"execution_count": 3}) == pytest.approx(0.6)
    assert importance_score("workflow", {"execution_count": 50}) == 1.0
