"""
===============================================================================
CRC CARD: domain/repositories.py
===============================================================================

Module:
    Chunk Store port (Protocol)

Responsibilities:
    - Define the contract every chunk store honors (in-memory, Postgres).
    - Keep application services independent of the storage engine.

Collaborators:
    - infrastructure/store/*: concrete stores.
    - application/hybrid_search, application/indexing: consumers.
    - ingestion collaborator (external): upsert / mark_stale.

Rules:
    - Every method raises StoreUnavailable when the backend is unreachable;
      never returns stale or partial data silently.
    - Query-path reads (get, bulk_get, search_*) never wait on writers.
===============================================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from .entities import Chunk, Embedding, UpsertResult


class ChunkStore(Protocol):
    """Persists chunks and their embeddings; serves vector and keyword search."""

    def upsert(self, chunk: Chunk) -> UpsertResult:
        """
        R: Idempotent by content hash.

        - Same hash at the same (document_id, ordinal): no-op.
        - Changed hash: new chunk version, prior one tombstoned.
        - Same hash already stored for another document: stored once,
          referenced from both documents.
        """
        ...

    def get(self, chunk_id: str) -> Chunk | None:
        """R: Returns the chunk even if tombstoned (pinned citations)."""
        ...

    def bulk_get(self, chunk_ids: Sequence[str]) -> list[Chunk]:
        """R: Known chunks in input order; unknown ids are skipped."""
        ...

    def search_by_vector(
        self, query_vector: Sequence[float], model_version: str, top_k: int
    ) -> list[tuple[Chunk, float]]:
        """R: Live chunks embedded with `model_version`, best similarity first."""
        ...

    def search_by_keyword(self, query_text: str, top_k: int) -> list[tuple[Chunk, float]]:
        """R: Live chunks matching the query lexically, best score first."""
        ...

    def mark_stale(self, document_id: str) -> int:
        """R: Drops the document's references; returns tombstoned chunk count."""
        ...

    def set_embedding(self, chunk_id: str, embedding: Embedding) -> None:
        """R: Attaches an embedding for its model version (indexing path)."""
        ...

    def chunks_missing_embedding(self, model_version: str, limit: int) -> list[Chunk]:
        """R: Live chunks with no embedding for `model_version`."""
        ...

    def freshness_report(
        self, threshold_days: int, now: datetime | None = None
    ) -> dict[str, Any]:
        """R: Per-source age stats (fresh vs stale, age buckets)."""
        ...

    def ping(self) -> bool:
        """R: Liveness check for health endpoints."""
        ...
