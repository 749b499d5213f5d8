"""
===============================================================================
CRC CARD: application/embedding_service.py
===============================================================================

Class:
    EmbeddingService

Responsibilities:
    - Turn text into vectors tagged with the current embedding model version.
    - Query path: cache-aside with a short TTL (best effort).
    - Document path: dedupe + fixed-size batches.
    - Go through the FallbackChain, restricted to providers serving the same
      model version (vectors of different versions are never mixed).

Collaborators:
    - application.fallback_chain.FallbackChain (invoke_embedding)
    - domain.cache.EmbeddingCachePort (query cache)
    - domain.engine_config.EngineConfig (model version, limits)
    - crosscutting.metrics (cache hits / misses)

Notes:
    - Cache key: model_version | task | normalization version | normalized text.
      Bump _TEXT_NORMALIZATION_VERSION when normalization changes.
===============================================================================
"""

from __future__ import annotations

import asyncio
import re
from typing import Iterator, List, Optional, Sequence

from ..crosscutting.exceptions import AllProvidersFailed, ConfigurationError, EmbeddingFailed
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_embedding_cache_hit, record_embedding_cache_miss
from ..crosscutting.timing import Deadline
from ..domain.cache import EmbeddingCachePort
from ..domain.engine_config import EngineConfig
from ..domain.entities import Embedding, ProviderAttempt
from .fallback_chain import FallbackChain

_WHITESPACE_RE = re.compile(r"\s+")
_TEXT_NORMALIZATION_VERSION = "v1"
_TASK_QUERY = "query"


def normalize_embedding_text(text: str) -> str:
    """R: strip, collapse whitespace, lowercase."""
    return _WHITESPACE_RE.sub(" ", (text or "").strip()).lower()


def build_embedding_cache_key(model_version: str, text: str, task_type: str = _TASK_QUERY) -> str:
    normalized = normalize_embedding_text(text)
    return f"{model_version}|{task_type}|{_TEXT_NORMALIZATION_VERSION}|{normalized}"


def _batched(items: Sequence[str], batch_size: int) -> Iterator[List[str]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    for i in range(0, len(items), batch_size):
        yield list(items[i : i + batch_size])


class EmbeddingService:
    def __init__(
        self,
        chain: FallbackChain,
        config: EngineConfig,
        *,
        cache: Optional[EmbeddingCachePort] = None,
    ) -> None:
        self._chain = chain
        self._config = config
        self._cache = cache

    @property
    def model_version(self) -> str:
        return self._config.embedding_model_version

    def _profiles(self):
        profiles = self._config.embedding_profiles()
        if not profiles:
            raise ConfigurationError(
                f"No embedding provider serves model version '{self.model_version}'"
            )
        return profiles

    def _prepare(self, text: str) -> str:
        if not (text or "").strip():
            raise EmbeddingFailed("Text to embed must not be empty")
        limit = self._config.embedding_max_text_chars
        if len(text) > limit:
            logger.debug("Embedding input truncated", extra={"chars": len(text), "limit": limit})
            return text[:limit]
        return text

    # -----------------------------------------------------------------------
    # Query mode
    # -----------------------------------------------------------------------
    async def embed(
        self,
        text: str,
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
        conversation_id: str = "",
    ) -> Embedding:
        """
        R: Query embedding with cache-aside.

        Raises EmbeddingFailed when every provider of the model version fails.
        """
        prepared = self._prepare(text)
        key = build_embedding_cache_key(self.model_version, prepared)

        cached = None
        if self._cache is not None:
            try:
                cached = await asyncio.to_thread(self._cache.get, key)
            except Exception as exc:
                logger.warning(
                    "Embedding cache get failed; using provider",
                    extra={"error_type": type(exc).__name__},
                )
        if cached is not None:
            record_embedding_cache_hit(kind="query")
            return Embedding(vector=tuple(cached), model_version=self.model_version)
        record_embedding_cache_miss(kind="query")

        vectors = await self._embed_via_chain(
            [prepared], deadline=deadline, attempts=attempts, conversation_id=conversation_id
        )
        vector = vectors[0]

        if self._cache is not None:
            try:
                await asyncio.to_thread(self._cache.set, key, vector)
            except Exception as exc:
                logger.warning(
                    "Embedding cache set failed; continuing without cache",
                    extra={"error_type": type(exc).__name__},
                )

        return Embedding(vector=tuple(vector), model_version=self.model_version)

    # -----------------------------------------------------------------------
    # Batch mode (indexing)
    # -----------------------------------------------------------------------
    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[Embedding]:
        """R: One Embedding per input, same order. Duplicates embedded once."""
        if not texts:
            return []

        prepared = [self._prepare(t) for t in texts]
        unique: List[str] = []
        index_of: dict[str, int] = {}
        for text in prepared:
            if text not in index_of:
                index_of[text] = len(unique)
                unique.append(text)

        vectors: List[List[float]] = []
        for batch in _batched(unique, self._config.embedding_max_batch_size):
            vectors.extend(await self._embed_via_chain(batch, deadline=deadline))

        return [
            Embedding(vector=tuple(vectors[index_of[text]]), model_version=self.model_version)
            for text in prepared
        ]

    async def _embed_via_chain(
        self,
        texts: List[str],
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
        conversation_id: str = "",
    ) -> List[List[float]]:
        try:
            response = await self._chain.invoke_embedding(
                texts,
                self._profiles(),
                deadline=deadline,
                attempts=attempts,
                conversation_id=conversation_id,
            )
        except AllProvidersFailed as exc:
            raise EmbeddingFailed(
                f"Embedding failed for model version '{self.model_version}'",
                original_error=exc,
            ) from exc
        return response.vectors
