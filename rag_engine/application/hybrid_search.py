"""
===============================================================================
CRC CARD: application/hybrid_search.py
===============================================================================

Class:
    HybridSearchService

Responsibilities:
    - Run semantic (vector) and lexical (keyword) retrieval concurrently.
    - Normalize each stream to [0, 1] (min-max) and fuse them:
        weighted: w_sem * sem + w_lex * lex (weights renormalized to sum 1)
        rrf:      sum of 1 / (k + rank) over the streams
    - Dedupe by chunk id, apply the score threshold, keep top K.
    - Degrade instead of failing when one branch is down.

Collaborators:
    - application.embedding_service.EmbeddingService (query vector)
    - domain.repositories.ChunkStore (search_by_vector / search_by_keyword)
    - domain.engine_config.EngineConfig (weights, mode, multipliers)
    - crosscutting.metrics.record_retrieval_degraded

Policy:
    - EmbeddingFailed -> lexical only. Lexical failure -> semantic only.
    - Both branches down -> the error propagates (StoreUnavailable first).
    - Deterministic: ties broken by chunk id.
===============================================================================
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..crosscutting.exceptions import EmbeddingFailed, RAGError, StoreUnavailable
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_retrieval_degraded
from ..crosscutting.timing import Deadline
from ..domain.engine_config import EngineConfig
from ..domain.entities import Chunk, ProviderAttempt, SearchCandidate
from ..domain.repositories import ChunkStore
from .embedding_service import EmbeddingService

Ranked = List[Tuple[Chunk, float]]


@dataclass
class SearchOutcome:
    candidates: List[SearchCandidate]
    degraded: List[str] = field(default_factory=list)


def min_max_normalize(pairs: Sequence[Tuple[Chunk, float]]) -> Dict[str, float]:
    """
    R: chunk_id -> score in [0, 1].

    A single element or a constant stream maps to 1.0. Duplicate ids keep
    their best raw score.
    """
    best: Dict[str, float] = {}
    for chunk, score in pairs:
        if chunk.chunk_id not in best or score > best[chunk.chunk_id]:
            best[chunk.chunk_id] = score
    if not best:
        return {}
    low, high = min(best.values()), max(best.values())
    if high == low:
        return {cid: 1.0 for cid in best}
    span = high - low
    return {cid: (score - low) / span for cid, score in best.items()}


def _ranks(pairs: Sequence[Tuple[Chunk, float]]) -> Dict[str, int]:
    ranks: Dict[str, int] = {}
    ordered = sorted(pairs, key=lambda p: (-p[1], p[0].chunk_id))
    for chunk, _ in ordered:
        if chunk.chunk_id not in ranks:
            ranks[chunk.chunk_id] = len(ranks) + 1
    return ranks


class HybridSearchService:
    def __init__(
        self,
        store: ChunkStore,
        embeddings: EmbeddingService,
        config: EngineConfig,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._config = config

    async def search(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
        conversation_id: str = "",
    ) -> List[SearchCandidate]:
        outcome = await self.search_detailed(
            query_text,
            top_k,
            deadline=deadline,
            attempts=attempts,
            conversation_id=conversation_id,
        )
        return outcome.candidates

    async def search_detailed(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
        attempts: Optional[List[ProviderAttempt]] = None,
        conversation_id: str = "",
    ) -> SearchOutcome:
        k = top_k if top_k is not None else self._config.search_top_k
        if k <= 0 or not (query_text or "").strip():
            return SearchOutcome(candidates=[])
        fetch = k * max(1, self._config.candidate_multiplier)

        async def semantic() -> Ranked:
            embedding = await self._embeddings.embed(
                query_text, deadline=deadline, attempts=attempts, conversation_id=conversation_id
            )
            return await asyncio.to_thread(
                self._store.search_by_vector, list(embedding.vector), embedding.model_version, fetch
            )

        async def lexical() -> Ranked:
            return await asyncio.to_thread(self._store.search_by_keyword, query_text, fetch)

        sem_result, lex_result = await asyncio.gather(
            semantic(), lexical(), return_exceptions=True
        )
        sem_pairs, sem_error = self._unpack(sem_result, "semantic")
        lex_pairs, lex_error = self._unpack(lex_result, "lexical")

        if sem_error is not None and lex_error is not None:
            for error in (sem_error, lex_error):
                if isinstance(error, StoreUnavailable):
                    raise error
            raise sem_error

        degraded: List[str] = []
        if sem_error is not None:
            degraded.append("semantic")
            record_retrieval_degraded("semantic")
            logger.warning(
                "Semantic branch failed, lexical only",
                extra={"error_code": sem_error.error_code},
            )
        if lex_error is not None:
            degraded.append("lexical")
            record_retrieval_degraded("lexical")
            logger.warning(
                "Lexical branch failed, semantic only",
                extra={"error_code": lex_error.error_code},
            )

        if self._config.combine_mode == "rrf":
            candidates = self._fuse_rrf(sem_pairs, lex_pairs)
        else:
            candidates = self._fuse_weighted(sem_pairs, lex_pairs)

        candidates = [
            c for c in candidates if c.combined_score >= self._config.min_combined_score
        ]
        candidates.sort(key=lambda c: (-c.combined_score, c.chunk_id))
        candidates = candidates[:k]

        logger.info(
            "Hybrid search done",
            extra={
                "semantic_hits": len(sem_pairs),
                "lexical_hits": len(lex_pairs),
                "returned": len(candidates),
                "degraded": degraded,
                "combine_mode": self._config.combine_mode,
            },
        )
        return SearchOutcome(candidates=candidates, degraded=degraded)

    @staticmethod
    def _unpack(result, branch: str) -> Tuple[Ranked, Optional[RAGError]]:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, (EmbeddingFailed, StoreUnavailable)):
            return [], result
        if isinstance(result, RAGError) and branch == "lexical":
            return [], result
        if isinstance(result, BaseException):
            raise result
        return list(result), None

    def _fuse_weighted(self, sem_pairs: Ranked, lex_pairs: Ranked) -> List[SearchCandidate]:
        sem = min_max_normalize(sem_pairs)
        lex = min_max_normalize(lex_pairs)
        sem_w, lex_w = self._config.normalized_weights()
        # A stream with no hits contributes nothing; the other carries full weight.
        if not lex:
            sem_w, lex_w = 1.0, 0.0
        elif not sem:
            sem_w, lex_w = 0.0, 1.0

        chunks = self._chunks_by_id(sem_pairs, lex_pairs)
        out: List[SearchCandidate] = []
        for cid, chunk in chunks.items():
            s = sem.get(cid, 0.0)
            lx = lex.get(cid, 0.0)
            out.append(
                SearchCandidate(
                    chunk=chunk,
                    semantic_score=s,
                    lexical_score=lx,
                    combined_score=sem_w * s + lex_w * lx,
                )
            )
        return out

    def _fuse_rrf(self, sem_pairs: Ranked, lex_pairs: Ranked) -> List[SearchCandidate]:
        sem = min_max_normalize(sem_pairs)
        lex = min_max_normalize(lex_pairs)
        sem_ranks = _ranks(sem_pairs)
        lex_ranks = _ranks(lex_pairs)
        k = self._config.rrf_k

        chunks = self._chunks_by_id(sem_pairs, lex_pairs)
        out: List[SearchCandidate] = []
        for cid, chunk in chunks.items():
            score = 0.0
            if cid in sem_ranks:
                score += 1.0 / (k + sem_ranks[cid])
            if cid in lex_ranks:
                score += 1.0 / (k + lex_ranks[cid])
            out.append(
                SearchCandidate(
                    chunk=chunk,
                    semantic_score=sem.get(cid, 0.0),
                    lexical_score=lex.get(cid, 0.0),
                    combined_score=score,
                )
            )
        return out

    @staticmethod
    def _chunks_by_id(*streams: Ranked) -> Dict[str, Chunk]:
        chunks: Dict[str, Chunk] = {}
        for stream in streams:
            for chunk, _ in stream:
                chunks.setdefault(chunk.chunk_id, chunk)
        return chunks
