"""
============================================================
CRC CARD: infrastructure/store/in_memory.py
============================================================
Class: InMemoryChunkStore

Responsibilities:
  - Store chunks in memory (tests / local dev / small corpora).
  - Content-hash idempotent upsert with versioning and tombstones.
  - Cross-document dedup: identical text stored once, referenced by each
    document.
  - Vector search (numpy cosine) restricted to one embedding model version.
  - Keyword search with coverage / frequency / proximity scoring.
  - Freshness report per source.

Collaborators:
  - domain.repositories.ChunkStore (contract)
  - domain.keywords (lexical scoring)
  - store.freshness (report shape shared with Postgres)

Constraints / Notes:
  - Copy-on-write snapshots: readers grab the current immutable snapshot
    and never take the lock; writers serialize among themselves only.
  - Chunks inside a snapshot are never mutated; writers publish new Chunk
    objects via dataclasses.replace.
  - Deterministic ordering: score DESC, chunk_id ASC.
============================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import numpy as np

from ...crosscutting.logger import logger
from ...domain.entities import Chunk, Embedding, UpsertResult
from ...domain.keywords import MIN_KEYWORD_SCORE, extract_keywords, keyword_score
from ...domain.services import TokenCounter
from .freshness import SourceFreshness, build_freshness_report

SlotKey = Tuple[str, int]


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of the store. Replaced wholesale on every write."""

    chunks: Dict[str, Chunk] = field(default_factory=dict)
    slots: Dict[SlotKey, str] = field(default_factory=dict)
    by_hash: Dict[str, str] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ranked(pairs: List[Tuple[Chunk, float]], top_k: int) -> List[Tuple[Chunk, float]]:
    pairs.sort(key=lambda pair: (-pair[1], pair[0].chunk_id))
    return pairs[: max(0, top_k)]


class InMemoryChunkStore:
    """
    Thread-safe in-memory ChunkStore.

    Mental model:
    - `_snapshot.chunks` is the "table" (chunk_id -> Chunk), tombstones included.
    - `_snapshot.slots` maps (document_id, ordinal) -> chunk_id (live slots only).
    - `_snapshot.by_hash` maps content_hash -> live chunk_id (dedup index).
    """

    def __init__(
        self,
        *,
        max_chunk_tokens: Optional[int] = None,
        token_counter: Optional[TokenCounter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._write_lock = Lock()
        self._snapshot = _Snapshot()
        self._max_chunk_tokens = max_chunk_tokens
        self._token_counter = token_counter
        self._clock = clock

    # =========================================================
    # Helpers
    # =========================================================
    def _token_count(self, chunk: Chunk) -> int:
        # A caller-declared count may only raise the measured one.
        if self._token_counter is None:
            return chunk.token_count
        return max(chunk.token_count, self._token_counter.count(chunk.text))

    def _validate(self, chunk: Chunk) -> int:
        if not chunk.text or not chunk.text.strip():
            raise ValueError("chunk text must not be empty")
        if not chunk.document_id:
            raise ValueError("chunk document_id is required")
        tokens = self._token_count(chunk)
        if self._max_chunk_tokens is not None and tokens > self._max_chunk_tokens:
            raise ValueError(
                f"chunk has {tokens} tokens, max is {self._max_chunk_tokens}"
            )
        return tokens

    def _detach(
        self,
        chunks: Dict[str, Chunk],
        by_hash: Dict[str, str],
        chunk_id: str,
        document_id: str,
        now: datetime,
    ) -> bool:
        """R: Drops one document reference; tombstones the chunk when none remain."""
        current = chunks[chunk_id]
        remaining = tuple(d for d in current.document_ids if d != document_id)
        if remaining:
            chunks[chunk_id] = replace(current, document_ids=remaining)
            return False
        chunks[chunk_id] = replace(current, tombstoned_at=now)
        if by_hash.get(current.content_hash) == chunk_id:
            del by_hash[current.content_hash]
        return True

    def _live(self) -> List[Chunk]:
        return [c for c in self._snapshot.chunks.values() if not c.is_tombstoned]

    # =========================================================
    # Writes (serialized)
    # =========================================================
    def upsert(self, chunk: Chunk) -> UpsertResult:
        tokens = self._validate(chunk)
        slot: SlotKey = (chunk.document_id, chunk.ordinal)

        with self._write_lock:
            snap = self._snapshot
            existing_id = snap.slots.get(slot)
            existing = snap.chunks.get(existing_id) if existing_id else None

            if existing is not None and existing.content_hash == chunk.content_hash:
                return UpsertResult(chunk_id=existing.chunk_id, status="unchanged")

            chunks = dict(snap.chunks)
            slots = dict(snap.slots)
            by_hash = dict(snap.by_hash)
            now = self._clock()

            tombstoned_id: Optional[str] = None
            if existing is not None and not any(
                key[0] == chunk.document_id and key != slot and cid == existing.chunk_id
                for key, cid in slots.items()
            ):
                if self._detach(chunks, by_hash, existing.chunk_id, chunk.document_id, now):
                    tombstoned_id = existing.chunk_id

            shared_id = by_hash.get(chunk.content_hash)
            if shared_id is not None:
                shared = chunks[shared_id]
                if chunk.document_id not in shared.document_ids:
                    chunks[shared_id] = replace(
                        shared, document_ids=shared.document_ids + (chunk.document_id,)
                    )
                slots[slot] = shared_id
                self._snapshot = _Snapshot(chunks=chunks, slots=slots, by_hash=by_hash)
                logger.info(
                    "Chunk deduplicated",
                    extra={"chunk_id": shared_id, "document_id": chunk.document_id},
                )
                return UpsertResult(
                    chunk_id=shared_id,
                    status="deduplicated",
                    tombstoned_chunk_id=tombstoned_id,
                )

            stored = replace(
                chunk,
                chunk_id=chunk.chunk_id or uuid4().hex,
                token_count=tokens,
                document_ids=(chunk.document_id,),
                embeddings=dict(chunk.embeddings),
                version=(existing.version + 1) if existing is not None else 1,
                tombstoned_at=None,
            )
            if stored.chunk_id in chunks:
                raise ValueError(f"chunk_id already exists: {stored.chunk_id}")

            chunks[stored.chunk_id] = stored
            slots[slot] = stored.chunk_id
            by_hash[stored.content_hash] = stored.chunk_id
            self._snapshot = _Snapshot(chunks=chunks, slots=slots, by_hash=by_hash)

        status = "superseded" if existing is not None else "created"
        logger.debug(
            "Chunk stored",
            extra={"chunk_id": stored.chunk_id, "status": status, "version": stored.version},
        )
        return UpsertResult(
            chunk_id=stored.chunk_id, status=status, tombstoned_chunk_id=tombstoned_id
        )

    def mark_stale(self, document_id: str) -> int:
        with self._write_lock:
            snap = self._snapshot
            doomed = [key for key in snap.slots if key[0] == document_id]
            if not doomed:
                return 0
            chunks = dict(snap.chunks)
            slots = dict(snap.slots)
            by_hash = dict(snap.by_hash)
            now = self._clock()

            tombstoned = 0
            for key in doomed:
                chunk_id = slots.pop(key)
                if chunks[chunk_id].is_tombstoned:
                    continue
                if document_id not in chunks[chunk_id].document_ids:
                    continue
                if self._detach(chunks, by_hash, chunk_id, document_id, now):
                    tombstoned += 1
            self._snapshot = _Snapshot(chunks=chunks, slots=slots, by_hash=by_hash)

        logger.info(
            "Document marked stale",
            extra={"document_id": document_id, "tombstoned": tombstoned},
        )
        return tombstoned

    def set_embedding(self, chunk_id: str, embedding: Embedding) -> None:
        with self._write_lock:
            snap = self._snapshot
            current = snap.chunks.get(chunk_id)
            if current is None:
                raise KeyError(chunk_id)
            chunks = dict(snap.chunks)
            chunks[chunk_id] = replace(
                current,
                embeddings={**current.embeddings, embedding.model_version: list(embedding.vector)},
            )
            self._snapshot = replace(snap, chunks=chunks)

    # =========================================================
    # Reads (lock-free, on the current snapshot)
    # =========================================================
    def get(self, chunk_id: str) -> Chunk | None:
        return self._snapshot.chunks.get(chunk_id)

    def bulk_get(self, chunk_ids: Sequence[str]) -> list[Chunk]:
        chunks = self._snapshot.chunks
        return [chunks[cid] for cid in chunk_ids if cid in chunks]

    def search_by_vector(
        self, query_vector: Sequence[float], model_version: str, top_k: int
    ) -> list[tuple[Chunk, float]]:
        if top_k <= 0:
            return []
        q = np.asarray(query_vector, dtype=float)
        q_norm = np.linalg.norm(q)
        if q_norm == 0:
            return []

        candidates: List[Chunk] = []
        vectors: List[List[float]] = []
        for chunk in self._live():
            vec = chunk.embedding_for(model_version)
            if vec is None:
                continue
            if len(vec) != q.shape[0]:
                logger.warning(
                    "Embedding dimension mismatch, chunk skipped",
                    extra={"chunk_id": chunk.chunk_id, "model_version": model_version},
                )
                continue
            candidates.append(chunk)
            vectors.append(vec)

        if not candidates:
            return []

        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = (matrix @ q) / (norms * q_norm)
        pairs = [(chunk, float(score)) for chunk, score in zip(candidates, scores)]
        return _ranked(pairs, top_k)

    def search_by_keyword(self, query_text: str, top_k: int) -> list[tuple[Chunk, float]]:
        keywords = extract_keywords(query_text)
        if not keywords or top_k <= 0:
            return []

        pairs: List[Tuple[Chunk, float]] = []
        for chunk in self._live():
            haystack = f"{chunk.title} {chunk.text}" if chunk.title else chunk.text
            score = keyword_score(haystack, keywords)
            if score >= MIN_KEYWORD_SCORE:
                pairs.append((chunk, score))
        return _ranked(pairs, top_k)

    def chunks_missing_embedding(self, model_version: str, limit: int) -> list[Chunk]:
        missing = [c for c in self._live() if c.embedding_for(model_version) is None]
        missing.sort(key=lambda c: c.chunk_id)
        return missing[: max(0, limit)]

    def freshness_report(
        self, threshold_days: int, now: datetime | None = None
    ) -> dict[str, Any]:
        grouped: Dict[str, SourceFreshness] = {}
        for chunk in self._live():
            key = chunk.source_uri or chunk.document_id
            prior = grouped.get(key)
            if prior is None:
                grouped[key] = SourceFreshness(
                    source_uri=key,
                    source_type=chunk.source_type,
                    last_indexed=chunk.freshness_at,
                    chunk_count=1,
                )
                continue
            grouped[key] = replace(
                prior,
                last_indexed=max(prior.last_indexed, chunk.freshness_at),
                chunk_count=prior.chunk_count + 1,
            )
        return build_freshness_report(grouped.values(), threshold_days, now or self._clock())

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._live())
