"""
===============================================================================
CRC CARD: application/indexing.py
===============================================================================

Class:
    IndexingService

Responsibilities:
    - Embed chunks that have no vector for the current model version.
    - Bound concurrent provider calls with a semaphore.
    - Write vectors through ChunkStore.set_embedding (sync store calls run in
      a worker thread, so query reads are never blocked).

Collaborators:
    - application.embedding_service.EmbeddingService (embed_batch)
    - domain.repositories.ChunkStore
    - crosscutting.metrics.record_indexed_chunks

Notes:
    - Cancellable: cancelling index_pending() cancels in-flight batches;
      vectors already written stay written.
    - A failed batch is logged and counted; the run continues.
===============================================================================
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List

from ..crosscutting.exceptions import EmbeddingFailed, StoreUnavailable
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_indexed_chunks
from ..domain.entities import Chunk
from ..domain.repositories import ChunkStore
from .embedding_service import EmbeddingService


@dataclass
class IndexingReport:
    indexed: int = 0
    failed: int = 0
    batches: int = 0


class IndexingService:
    def __init__(
        self,
        store: ChunkStore,
        embeddings: EmbeddingService,
        *,
        concurrency: int = 4,
        batch_size: int = 32,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._store = store
        self._embeddings = embeddings
        self._semaphore = asyncio.Semaphore(concurrency)
        self._batch_size = batch_size

    async def index_pending(self, *, limit: int = 1000) -> IndexingReport:
        """R: Embeds up to `limit` chunks missing the current model version."""
        model_version = self._embeddings.model_version
        pending: List[Chunk] = await asyncio.to_thread(
            self._store.chunks_missing_embedding, model_version, limit
        )
        report = IndexingReport()
        if not pending:
            return report

        batches = [
            pending[i : i + self._batch_size] for i in range(0, len(pending), self._batch_size)
        ]
        report.batches = len(batches)
        logger.info(
            "Indexing started",
            extra={"chunks": len(pending), "batches": len(batches), "model_version": model_version},
        )

        results = await asyncio.gather(*(self._index_batch(b) for b in batches))
        for ok, count in results:
            if ok:
                report.indexed += count
            else:
                report.failed += count

        record_indexed_chunks("indexed", report.indexed)
        record_indexed_chunks("failed", report.failed)
        logger.info(
            "Indexing finished",
            extra={"indexed": report.indexed, "failed": report.failed},
        )
        return report

    async def _index_batch(self, batch: List[Chunk]) -> tuple[bool, int]:
        async with self._semaphore:
            try:
                vectors = await self._embeddings.embed_batch([c.text for c in batch])
                for chunk, embedding in zip(batch, vectors):
                    await asyncio.to_thread(self._store.set_embedding, chunk.chunk_id, embedding)
            except (EmbeddingFailed, StoreUnavailable) as exc:
                logger.warning(
                    "Indexing batch failed",
                    extra={"chunks": len(batch), "error_code": exc.error_code},
                )
                return False, len(batch)
        return True, len(batch)
