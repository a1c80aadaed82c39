"""
Embedding lifecycle for SecondBrain Memory System
Copyright 2025 Jurden Bruce

Computes vectors for captured records and keeps at most one current vector
per (source_type, source_id). Saving is best effort: failures are logged and
never reach the capture caller.
"""

import asyncio
import logging
import traceback
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .models import EmbeddingRecord, EMBEDDING_POLICY_VALUES, SOURCE_TYPES
from .similarity import is_valid_vector
from .storage.embeddings import EmbeddingProvider
from .storage.sqlite_store import SQLiteStore
from .utils import hash_content

logger = logging.getLogger("secondbrain-memory.embedding-store")


class EmbeddingStore:
    """Persists embeddings with content-hash dedup and replace-on-update"""

    def __init__(self, sqlite_store: SQLiteStore, provider: EmbeddingProvider,
                 error_log: Optional[List[Dict[str, Any]]] = None):
        self.sqlite_store = sqlite_store
        self.provider = provider
        self.error_log = error_log if error_log is not None else []
        self._pending: Set[asyncio.Task] = set()
        self.stats = {"saved": 0, "skipped": 0, "failed": 0}

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

    @staticmethod
    def _validate(source_type: str, on_existing: str):
        if source_type not in SOURCE_TYPES:
            raise ValueError(f"Unknown source type: {source_type}")
        if on_existing not in EMBEDDING_POLICY_VALUES:
            raise ValueError(f"Unknown embedding policy: {on_existing}")

    async def save(self, source_type: str, source_id: str, text: str, on_existing: str = "skip") -> bool:
        """Compute and persist the embedding for a record

        Args:
            source_type: Kind of record (observation, decision, ...)
            source_id: Id of the owning record
            text: Exact text to embed
            on_existing: 'skip' reuses an embedding whose content hash matches,
                'replace' always recomputes

        Returns:
            True if a new embedding was written, False if skipped or failed
        """
        self._validate(source_type, on_existing)
        content_hash = hash_content(text)
        label = f"{source_type}:{source_id}"

        try:
            if on_existing == "skip":
                # Only the newest row counts; an older row with the same hash is stale
                existing = await asyncio.to_thread(self.sqlite_store.find_embedding, source_type, source_id)
                if (existing is not None
                        and existing.content_hash == content_hash
                        and existing.model == self.provider.model_name
                        and is_valid_vector(existing.vector)):
                    logger.debug(f"Embedding already exists for {label}")
                    self.stats["skipped"] += 1
                    return False

            # Compute before deleting so a provider failure keeps the old vector
            vector = await self.provider.embed(text)

            removed = await asyncio.to_thread(self.sqlite_store.delete_embeddings, source_type, source_id)
            if removed:
                logger.debug(f"Deleted {removed} existing embedding(s) for {label}")

            record = EmbeddingRecord(
                id=str(uuid.uuid4()),
                source_type=source_type,
                source_id=source_id,
                content_hash=content_hash,
                vector=vector,
                model=self.provider.model_name,
                created_at=datetime.now(),
            )
            await asyncio.to_thread(self.sqlite_store.create_embedding, record)

            self.stats["saved"] += 1
            logger.info(f"Saved embedding for {label}")
            return True
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"Failed to save embedding for {label}: {e}")
            self._log_error("save_embedding", e)
            return False

    def save_async(self, source_type: str, source_id: str, text: str, on_existing: str = "skip") -> asyncio.Task:
        """Fire-and-forget variant of save(); must be called inside a running loop"""
        self._validate(source_type, on_existing)
        task = asyncio.get_running_loop().create_task(
            self.save(source_type, source_id, text, on_existing)
        )
        # The loop only keeps weak references to tasks
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def pending_count(self) -> int:
        return len(self._pending)

    async def wait_for_pending(self):
        """Block until every fire-and-forget save has finished"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
