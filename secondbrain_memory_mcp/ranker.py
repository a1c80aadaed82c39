"""
Similarity ranking for SecondBrain Memory System
Copyright 2025 Jurden Bruce

Blends cosine similarity with recency decay and importance:

    final = similarity * Ws + recency * Wr + importance * Wi
    Ws    = max(0, 1 - (Wr + Wi))

Candidates are loaded in full and filtered in process instead of relying on
multi-value OR filters in the store.
"""

import asyncio
import logging
import math
import sys
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import SimilarityScore, SOURCE_COLLECTIONS, SOURCE_TYPES
from .similarity import cosine_similarity, is_valid_vector, VectorDimensionError
from .storage.embeddings import EmbeddingProvider, EmbeddingProviderError
from .storage.sqlite_store import SQLiteStore
from .utils import parse_timestamp

logger = logging.getLogger("secondbrain-memory.ranker")

DEFAULT_THRESHOLD = 0.7
WORKFLOW_THRESHOLD = 0.5
DEFAULT_LIMIT = 5
MAX_LIMIT = 20
DEFAULT_RECENCY_WEIGHT = 0.3
DEFAULT_IMPORTANCE_WEIGHT = 0.2
DEFAULT_DECAY_DAYS = 30.0
NEUTRAL_IMPORTANCE = 0.5


def similarity_weight(recency_weight: float, importance_weight: float) -> float:
    """Weight left over for raw similarity, never negative"""
    return max(0.0, 1.0 - (recency_weight + importance_weight))


def recency_score(age_days: float, decay_days: float = DEFAULT_DECAY_DAYS) -> float:
    """Exponential decay in (0, 1]; brand new records score 1"""
    if decay_days <= 0:
        raise ValueError("decay_days must be positive")
    score = math.exp(-max(0.0, age_days) / decay_days)
    # exp() underflows to 0.0 for very old records; stay strictly positive
    return max(score, sys.float_info.min)


def _explicit_level(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(1.0, max(0.0, (value - 1) / 4))


def importance_score(source_type: str, record: Dict[str, Any]) -> float:
    """Normalize a record's importance to [0, 1]

    An explicit 1-5 importance/strength wins; otherwise decisions with a
    recorded outcome score 0.8 (0.5 without), workflows earn 0.1 per
    execution on top of 0.3, and everything else is neutral.
    """
    for field_name in ("importance", "strength"):
        level = _explicit_level(record.get(field_name))
        if level is not None:
            return level

    if source_type == "decision":
        return 0.8 if record.get("outcome") else NEUTRAL_IMPORTANCE
    if source_type == "workflow":
        executions = record.get("execution_count") or 0
        return min(1.0, 0.3 + 0.1 * executions)
    return NEUTRAL_IMPORTANCE


def record_age_days(record: Dict[str, Any], now: datetime) -> float:
    created = parse_timestamp(record.get("created"))
    if created is None:
        return 0.0
    return max(0.0, (now - created).total_seconds() / 86400)


class SimilarityRanker:
    """Ranks stored embeddings against a query"""

    def __init__(self, sqlite_store: SQLiteStore, provider: EmbeddingProvider):
        self.sqlite_store = sqlite_store
        self.provider = provider

    @staticmethod
    def _validate(source_types: Iterable[str], threshold: float, limit: int,
                  recency_weight: float, importance_weight: float, decay_days: float):
        unknown = [t for t in source_types if t not in SOURCE_TYPES]
        if unknown:
            raise ValueError(f"Unknown source types: {', '.join(unknown)}")
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        if not 1 <= limit <= MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")
        for name, weight in (("recency_weight", recency_weight), ("importance_weight", importance_weight)):
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if decay_days <= 0:
            raise ValueError("decay_days must be positive")

    async def search(
        self,
        query: str,
        source_types: Optional[List[str]] = None,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
        recency_weight: float = DEFAULT_RECENCY_WEIGHT,
        importance_weight: float = DEFAULT_IMPORTANCE_WEIGHT,
        decay_days: float = DEFAULT_DECAY_DAYS,
        now: Optional[datetime] = None,
        record_filter: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[SimilarityScore]:
        """Rank stored records against a query

        Args:
            query: Natural language query
            source_types: Types to consider (default: all)
            threshold: Minimum raw cosine similarity
            limit: Maximum results (1-20)
            recency_weight: Weight of recency decay (0-1)
            importance_weight: Weight of importance (0-1)
            decay_days: Decay constant for recency in days
            now: Evaluation time (default: datetime.now())
            record_filter: Optional predicate on the owning record

        Returns:
            SimilarityScore list sorted by final score, best first

        Raises:
            Whatever the provider raises when the query can't be embedded.
        """
        wanted = list(source_types) if source_types else list(SOURCE_TYPES)
        self._validate(wanted, threshold, limit, recency_weight, importance_weight, decay_days)
        now = now or datetime.now()

        query_vector = await self.provider.embed(query)
        if not is_valid_vector(query_vector):
            raise EmbeddingProviderError("Query embedding is invalid")
        model = self.provider.model_name

        embeddings = await asyncio.to_thread(self.sqlite_store.list_embeddings)

        best: Dict[tuple, float] = {}
        for embedding in embeddings:
            if embedding.source_type not in wanted:
                continue

            if not is_valid_vector(embedding.vector):
                logger.warning(f"Skipping embedding {embedding.id} with invalid vector")
                continue

            if embedding.model != model:
                logger.warning(
                    f"Skipping embedding {embedding.id}: model {embedding.model} != query model {model}"
                )
                continue

            try:
                similarity = cosine_similarity(query_vector, embedding.vector)
            except VectorDimensionError as e:
                logger.warning(f"Failed to calculate similarity for {embedding.id}: {e}")
                continue

            # nan never passes the threshold
            if not similarity >= threshold:
                continue

            key = (embedding.source_type, embedding.source_id)
            if similarity > best.get(key, -math.inf):
                best[key] = similarity

        ws = similarity_weight(recency_weight, importance_weight)
        scores: List[SimilarityScore] = []

        for (source_type, source_id), similarity in best.items():
            collection = SOURCE_COLLECTIONS[source_type]
            try:
                record = await asyncio.to_thread(self.sqlite_store.get_record, collection, source_id)
            except Exception as e:
                logger.warning(f"Failed to load {source_type}:{source_id}: {e}")
                continue

            if record is None:
                logger.warning(f"Record {source_type}:{source_id} not found")
                continue
            if record_filter is not None and not record_filter(record):
                continue

            recency = recency_score(record_age_days(record, now), decay_days)
            importance = importance_score(source_type, record)
            final = similarity * ws + recency * recency_weight + importance * importance_weight

            scores.append(SimilarityScore(
                source_type=source_type,
                source_id=source_id,
                raw_similarity=similarity,
                recency_score=recency,
                importance_score=importance,
                final_score=final,
                record=record,
            ))

        scores.sort(key=lambda s: s.final_score, reverse=True)
        logger.debug(f"Ranked {len(scores)} of {len(embeddings)} embeddings for query")
        return scores[:limit]
