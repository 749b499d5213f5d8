"""
===============================================================================
CRC CARD: domain/cache.py
===============================================================================

Module:
    Cache ports (embeddings, re-rank scores)

Responsibilities:
    - Contracts (Protocol) to cache embedding vectors and re-rank scores
      by deterministic key.
    - Let application depend on the interface while infrastructure provides
      the in-memory / Redis backends.

Rules:
    - Domain module: no Redis, no metrics imports.
    - The backend owns TTL, eviction and serialization.
===============================================================================
"""

from __future__ import annotations

from typing import Protocol


class EmbeddingCachePort(Protocol):
    """
    Key: deterministic string (model version + normalized text).
    Value: embedding vector.

    get() returns None on miss / expiry; it never raises on a miss.
    """

    def get(self, key: str) -> list[float] | None: ...

    def set(self, key: str, embedding: list[float]) -> None: ...


class ScoreCachePort(Protocol):
    """
    Key: deterministic string (hash of query + chunk id).
    Value: relevance score in [0, 1].
    """

    def get(self, key: str) -> float | None: ...

    def set(self, key: str, score: float) -> None: ...
