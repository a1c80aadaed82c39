"""
Embedding providers for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

import asyncio
import logging
import traceback
from typing import List, Dict, Any, Optional
from datetime import datetime

import openai

from ..cache import EmbeddingCache
from ..similarity import is_valid_vector

logger = logging.getLogger("secondbrain-memory.embeddings")


class EmbeddingProviderError(Exception):
    """Provider is misconfigured or returned an unusable vector"""


def is_retryable_error(error: Exception) -> bool:
    """Rate limits, 5xx responses and dropped connections are worth retrying"""
    if isinstance(error, openai.RateLimitError):
        return True
    if isinstance(error, openai.APIStatusError):
        return 500 <= error.status_code < 600
    if isinstance(error, (openai.APIConnectionError, ConnectionResetError)):
        return True
    return False


class EmbeddingProvider:
    """Base class: text in, vector out, with an LRU cache in front"""

    provider_name = "base"

    def __init__(self, config: Dict[str, Any], embedding_cache: Optional[EmbeddingCache] = None,
                 error_log: Optional[List[Dict[str, Any]]] = None):
        self.config = config
        self.embedding_cache = embedding_cache if embedding_cache is not None else EmbeddingCache(
            maxsize=config.get("cache_maxsize", 1000)
        )
        self.error_log = error_log if error_log is not None else []

    @property
    def model_name(self) -> str:
        raise NotImplementedError

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

    async def embed(self, text: str) -> List[float]:
        """Generate embedding with caching"""
        cached = self.embedding_cache.lookup(self.model_name, text)
        if cached is not None:
            return cached

        vector = await self._embed(text)
        if not is_valid_vector(vector):
            raise EmbeddingProviderError(f"{self.provider_name} returned an invalid vector")

        self.embedding_cache.remember(self.model_name, text, vector)
        return vector

    async def _embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def is_available(self) -> bool:
        return True

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "model": self.model_name,
            "available": self.is_available(),
            "cache": self.embedding_cache.stats(),
        }


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Remote embeddings through the OpenAI API with exponential backoff"""

    provider_name = "openai"

    def __init__(self, config: Dict[str, Any], embedding_cache: Optional[EmbeddingCache] = None,
                 error_log: Optional[List[Dict[str, Any]]] = None, client=None):
        """
        Args:
            config: Configuration dict (openai_* and embedding_backoff_* keys)
            embedding_cache: Shared EmbeddingCache
            error_log: Shared error log list
            client: Optional pre-built AsyncOpenAI-compatible client
        """
        super().__init__(config, embedding_cache, error_log)
        self.client = client
        self.max_retries = config.get("embedding_max_retries", 3)
        self.backoff_initial = config.get("embedding_backoff_initial", 1.0)
        self.backoff_max = config.get("embedding_backoff_max", 30.0)
        self.backoff_factor = config.get("embedding_backoff_factor", 2.0)

    @property
    def model_name(self) -> str:
        return self.config.get("openai_model", "text-embedding-3-small")

    def _ensure_client(self):
        if self.client is not None:
            return self.client
        api_key = self.config.get("openai_api_key")
        if not api_key:
            raise EmbeddingProviderError("OPENAI_API_KEY is not set")
        # Retries are handled here, not by the SDK
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.get("openai_base_url"),
            max_retries=0,
        )
        logger.info(f"OpenAI embedding client initialized (model={self.model_name})")
        return self.client

    def backoff_delay(self, attempt: int) -> float:
        """Wait before retry number `attempt` (0-based): 1s, 2s, 4s ... capped"""
        return min(self.backoff_initial * (self.backoff_factor ** attempt), self.backoff_max)

    async def _embed(self, text: str) -> List[float]:
        client = self._ensure_client()
        total_attempts = self.max_retries + 1

        for attempt in range(total_attempts):
            try:
                response = await client.embeddings.create(model=self.model_name, input=text)
                return list(response.data[0].embedding)
            except Exception as e:
                if not is_retryable_error(e):
                    logger.error(f"Embedding request failed with non-retryable error: {e}")
                    self._log_error("embed_non_retryable", e)
                    raise
                if attempt == total_attempts - 1:
                    logger.error(f"Failed to create embedding after {total_attempts} attempts: {e}")
                    self._log_error("embed_retries_exhausted", e)
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Embedding attempt {attempt + 1}/{total_attempts} failed ({type(e).__name__}). "
                    f"{total_attempts - attempt - 1} retries left, waiting {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise EmbeddingProviderError("Embedding retry loop exited without a result")

    def is_available(self) -> bool:
        return self.client is not None or bool(self.config.get("openai_api_key"))


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded on first use"""

    provider_name = "local"

    def __init__(self, config: Dict[str, Any], embedding_cache: Optional[EmbeddingCache] = None,
                 error_log: Optional[List[Dict[str, Any]]] = None, lazy_load: bool = True):
        super().__init__(config, embedding_cache, error_log)
        self.encoder = None
        self._encoder_initialized = False
        self._encoder_lock = asyncio.Lock()

        if not lazy_load:
            self._init_encoder()

    @property
    def model_name(self) -> str:
        return self.config.get("local_model", "all-mpnet-base-v2")

    def _init_encoder(self):
        """Initialize sentence encoder"""
        import time
        start = time.perf_counter()

        # Import only when actually needed, the library is heavy
        from sentence_transformers import SentenceTransformer

        try:
            self.encoder = SentenceTransformer(self.model_name, device=self.config.get("local_device", "cpu"))
        except Exception as e:
            logger.error(f"Encoder initialization failed: {e}")
            self._log_error("encoder_init", e)
            raise EmbeddingProviderError(f"Could not load {self.model_name}: {e}") from e

        self._encoder_initialized = True
        logger.info(f"Encoder {self.model_name} loaded in {(time.perf_counter() - start)*1000:.2f}ms")

    async def _embed(self, text: str) -> List[float]:
        if not self._encoder_initialized:
            # Concurrent first calls must share one model load
            async with self._encoder_lock:
                if not self._encoder_initialized:
                    await asyncio.to_thread(self._init_encoder)
        embedding = await asyncio.to_thread(self.encoder.encode, text)
        return [float(v) for v in embedding.tolist()]

    def is_available(self) -> bool:
        return self.encoder is not None


def create_embedding_provider(config: Dict[str, Any], embedding_cache: Optional[EmbeddingCache] = None,
                              error_log: Optional[List[Dict[str, Any]]] = None) -> EmbeddingProvider:
    """Pick the provider named by config['embedding_provider']"""
    name = config.get("embedding_provider", "openai")
    if name == "openai":
        return OpenAIEmbeddingProvider(config, embedding_cache, error_log)
    if name in ("local", "sentence-transformers"):
        return SentenceTransformerProvider(config, embedding_cache, error_log,
                                           lazy_load=config.get("lazy_load", True))
    raise ValueError(f"Unknown embedding provider: {name}")
