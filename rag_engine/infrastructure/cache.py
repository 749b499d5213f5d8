"""
============================================================
CRC CARD: infrastructure/cache.py
============================================================
Module: TTL caches for query embeddings and re-rank scores

Responsibilities:
  - Keep recently computed query vectors and relevance scores so repeated
    questions skip the provider round trip.
  - Two storage options:
      - InMemoryCacheBackend: bounded LRU with per-entry expiry (one process)
      - RedisCacheBackend: SETEX with JSON payloads (shared by workers)
  - Typed views on top of a backend: EmbeddingCache, ScoreCache.

Collaborators:
  - application/embedding_service (EmbeddingCachePort)
  - application/reranker (ScoreCachePort)
  - redis-py

Policy:
  - A cache problem is a miss, never an error for the query.
  - Stored values stay JSON friendly (lists of floats, floats).
============================================================
"""

from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from ..crosscutting.logger import logger


@dataclass
class CacheCounters:
    """Hit/miss bookkeeping shared by every backend."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    evictions: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "evictions": self.evictions,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
        }


class CacheBackend(ABC):
    """Key/value store with per-entry TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Stored value, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def stats(self) -> Dict[str, Any]: ...


class InMemoryCacheBackend(CacheBackend):
    """
    Bounded LRU. Each slot holds ``(expires_at, value)``; a read moves the
    key to the fresh end, a write past capacity drops the stalest key.
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._capacity = int(max_size)
        self._now = clock
        self._slots: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._guard = threading.Lock()
        self._counters = CacheCounters()

    def get(self, key: str) -> Optional[Any]:
        now = self._now()
        with self._guard:
            slot = self._slots.get(key)
            if slot is not None and now >= slot[0]:
                del self._slots[key]
                self._counters.expired += 1
                slot = None
            if slot is None:
                self._counters.misses += 1
                return None
            self._slots.move_to_end(key)
            self._counters.hits += 1
            return slot[1]

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        slot = (self._now() + float(ttl_seconds), value)
        with self._guard:
            self._slots[key] = slot
            self._slots.move_to_end(key)
            while len(self._slots) > self._capacity:
                self._slots.popitem(last=False)
                self._counters.evictions += 1

    def clear(self) -> None:
        with self._guard:
            self._slots.clear()

    def stats(self) -> Dict[str, Any]:
        with self._guard:
            return {
                "backend": "in-memory",
                "size": len(self._slots),
                "max_size": self._capacity,
                **self._counters.as_dict(),
            }


class RedisCacheBackend(CacheBackend):
    """Redis with native expiry; keys live under ``rag_engine:``."""

    KEY_PREFIX = "rag_engine:"

    def __init__(self, *, client: "redis.Redis") -> None:
        self._client = client
        self._counters = CacheCounters()

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCacheBackend":
        if not redis_url:
            raise ValueError("redis_url is required")
        return cls(client=redis.Redis.from_url(redis_url, decode_responses=True))

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def _failed(self, operation: str, exc: Exception) -> None:
        self._counters.errors += 1
        logger.warning(
            "Redis cache operation failed",
            extra={"operation": operation, "error": str(exc)},
        )

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._client.get(self.KEY_PREFIX + key)
        except redis.RedisError as exc:
            self._failed("get", exc)
            raw = None
        value = None
        if raw is not None:
            try:
                value = json.loads(raw)
            except ValueError:
                logger.warning("Discarding undecodable cache entry", extra={"key": key})
        if value is None:
            self._counters.misses += 1
        else:
            self._counters.hits += 1
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        # SETEX takes whole seconds
        seconds = max(1, int(ttl_seconds))
        try:
            self._client.setex(self.KEY_PREFIX + key, seconds, json.dumps(value))
        except redis.RedisError as exc:
            self._failed("set", exc)

    def clear(self) -> None:
        try:
            stale = list(self._client.scan_iter(match=self.KEY_PREFIX + "*"))
            if stale:
                self._client.delete(*stale)
        except redis.RedisError as exc:
            self._failed("clear", exc)

    def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", **self._counters.as_dict()}


class _NamespacedCache:
    """Fixed TTL and key namespace over a shared backend."""

    namespace = ""

    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttl_seconds: float,
        namespace: Optional[str] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._backend = backend
        self._ttl = float(ttl_seconds)
        if namespace is not None:
            self.namespace = namespace

    def _read(self, key: str) -> Any:
        return self._backend.get(f"{self.namespace}:{key}")

    def _write(self, key: str, value: Any) -> None:
        self._backend.set(f"{self.namespace}:{key}", value, self._ttl)

    @property
    def stats(self) -> Dict[str, Any]:
        return self._backend.stats()


class EmbeddingCache(_NamespacedCache):
    namespace = "emb"

    def get(self, key: str) -> Optional[List[float]]:
        value = self._read(key)
        return value if isinstance(value, list) else None

    def set(self, key: str, embedding: List[float]) -> None:
        self._write(key, list(embedding))


class ScoreCache(_NamespacedCache):
    namespace = "rerank"

    def get(self, key: str) -> Optional[float]:
        value = self._read(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def set(self, key: str, score: float) -> None:
        self._write(key, float(score))


def create_cache_backend(redis_url: str = "", *, max_size: int = 10_000) -> CacheBackend:
    """Redis when a URL is given and the server answers PING, memory otherwise."""
    backend: Optional[CacheBackend] = None
    if redis_url:
        try:
            candidate = RedisCacheBackend.from_url(redis_url)
        except (ValueError, redis.RedisError) as exc:
            logger.warning("Redis cache unavailable", extra={"error": str(exc)})
        else:
            if candidate.ping():
                backend = candidate
            else:
                logger.warning("Redis cache did not answer PING")
    if backend is None:
        backend = InMemoryCacheBackend(max_size=max_size)
    logger.info("Cache backend selected", extra={"backend": backend.stats()["backend"]})
    return backend
