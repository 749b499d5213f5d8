"""
===============================================================================
CRC CARD: application/reranker.py
===============================================================================

Class:
    Reranker (+ LLMRelevanceScorer)

Responsibilities:
    - Reorder Hybrid Search candidates by (query, passage) relevance.
    - Modes:
        disabled  -> incoming order
        heuristic -> lexical heuristic only (no provider calls)
        model     -> RelevanceScorer score
        combined  -> model_weight * model + (1 - model_weight) * heuristic
    - Rescore only the first `rerank_limit` candidates; the tail keeps its
      order after them. Output cardinality == input cardinality.
    - Fall back to the incoming order when the scorer is unavailable.

Collaborators:
    - domain.services.RelevanceScorer (LLMRelevanceScorer by default)
    - domain.cache.ScoreCachePort (optional score cache)
    - domain.keywords.extract_keywords
    - crosscutting.metrics.record_rerank_fallback

Notes:
    - Cache key: sha256(query + "_" + chunk_id). The key does not include the
      mode; heuristic scores are never cached.
===============================================================================
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from dataclasses import replace
from typing import List, Optional, Sequence

from ..crosscutting.exceptions import RAGError
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_rerank_fallback
from ..crosscutting.timing import Deadline
from ..domain.cache import ScoreCachePort
from ..domain.engine_config import EngineConfig
from ..domain.entities import (
    GenerationRequest,
    ProviderAttempt,
    RequestKind,
    SearchCandidate,
)
from ..domain.keywords import extract_keywords
from ..domain.services import RelevanceScorer
from .fallback_chain import FallbackChain
from .model_router import ModelRouter

RERANK_MODES = ("disabled", "heuristic", "model", "combined")

_PASSAGE_MAX_CHARS = 500
_IDEAL_PASSAGE_CHARS = 500
_DEFAULT_MODEL_SCORE = 0.5
_SCORE_RE = re.compile(r"\d*\.?\d+")

RERANK_SYSTEM_PROMPT = (
    "You are a relevance scoring system. Rate how relevant the passage is to "
    "the query on a scale from 0.0 to 1.0, where 0.0 means not relevant at all "
    "and 1.0 means highly relevant. Respond with only a decimal number."
)


def rerank_cache_key(query_text: str, chunk_id: str) -> str:
    return hashlib.sha256(f"{query_text}_{chunk_id}".encode("utf-8")).hexdigest()


def heuristic_score(query_text: str, candidate: SearchCandidate) -> float:
    """
    R: Lexical relevance in [0, 1].

    base * 0.3 + exact phrase 0.3 + keyword coverage * 0.2
    + min(0.2, log(1 + occurrences) / 10), scaled by a length penalty
    (up to 10% off for passages far from ~500 chars).
    """
    content = candidate.chunk.text.lower()
    query_lower = (query_text or "").strip().lower()

    score = candidate.combined_score * 0.3
    if query_lower and query_lower in content:
        score += 0.3

    keywords = extract_keywords(query_text)
    if keywords:
        matched = sum(1 for kw in keywords if kw in content)
        score += (matched / len(keywords)) * 0.2
        occurrences = sum(content.count(kw) for kw in keywords)
        score += min(0.2, math.log(1 + occurrences) / 10)

    length_penalty = 1.0 - min(
        0.1, abs(len(content) - _IDEAL_PASSAGE_CHARS) / _IDEAL_PASSAGE_CHARS
    )
    return max(0.0, min(1.0, score * length_penalty))


def parse_relevance_score(text: str) -> Optional[float]:
    """R: First decimal in `text`, clamped to [0, 1]. None if there is none."""
    match = _SCORE_RE.search(text or "")
    if match is None:
        return None
    return max(0.0, min(1.0, float(match.group(0))))


class LLMRelevanceScorer:
    """
    RelevanceScorer backed by a chat model through the Fallback Chain.

    Provider failures propagate (AllProvidersFailed); the Reranker turns them
    into a fallback to the incoming order.
    """

    def __init__(
        self,
        chain: FallbackChain,
        router: ModelRouter,
        *,
        cost_preference: str = "cost",
        attempts: Optional[List[ProviderAttempt]] = None,
    ) -> None:
        self._chain = chain
        self._router = router
        self._cost_preference = cost_preference
        self._attempts = attempts

    async def score(self, query: str, passage: str) -> float:
        request = GenerationRequest(
            prompt=(
                f"Query: {query}\n\n"
                f"Passage: {passage[:_PASSAGE_MAX_CHARS]}\n\n"
                "Score (0.0-1.0):"
            ),
            system_prompt=RERANK_SYSTEM_PROMPT,
            max_tokens=10,
            temperature=0.0,
            request_kind=RequestKind.RERANK,
        )
        decision = self._router.route(
            RequestKind.RERANK, "simple", self._cost_preference, query_text=query
        )
        result = await self._chain.invoke(
            request, decision.ordered, attempts=self._attempts
        )
        value = parse_relevance_score(result.text)
        if value is None:
            logger.warning(
                "Unparseable relevance score, using default",
                extra={"provider": result.provider_id, "default": _DEFAULT_MODEL_SCORE},
            )
            return _DEFAULT_MODEL_SCORE
        return value


class Reranker:
    def __init__(
        self,
        config: EngineConfig,
        scorer: Optional[RelevanceScorer] = None,
        *,
        score_cache: Optional[ScoreCachePort] = None,
    ) -> None:
        if config.rerank_mode not in RERANK_MODES:
            raise ValueError(f"rerank_mode must be one of {RERANK_MODES}")
        self._config = config
        self._scorer = scorer
        self._cache = score_cache

    @property
    def mode(self) -> str:
        if self._config.rerank_mode in ("model", "combined") and self._scorer is None:
            return "heuristic"
        return self._config.rerank_mode

    async def rerank(
        self,
        query_text: str,
        candidates: Sequence[SearchCandidate],
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[SearchCandidate]:
        """
        R: Same candidates, reordered by relevance.

        Falls back to the incoming order if the scorer fails or the deadline
        is already spent.
        """
        incoming = list(candidates)
        mode = self.mode
        if mode == "disabled" or not incoming:
            return incoming
        if deadline is not None and deadline.expired:
            self._fallback("deadline_expired", len(incoming))
            return incoming

        limit = max(0, self._config.rerank_limit)
        head, tail = incoming[:limit], incoming[limit:]

        try:
            scores = await self._score_all(query_text, head, mode)
        except asyncio.CancelledError:
            raise
        except RAGError as exc:
            self._fallback(exc.error_code, len(incoming))
            return incoming

        rescored = [replace(c, rerank_score=s) for c, s in zip(head, scores)]
        order = sorted(range(len(rescored)), key=lambda i: (-scores[i], i))
        result = [rescored[i] for i in order] + tail

        logger.info(
            "Re-ranking done",
            extra={
                "mode": mode,
                "rescored": len(head),
                "passed_through": len(tail),
                "top_chunk_id": result[0].chunk_id,
            },
        )
        return result

    async def _score_all(
        self, query_text: str, head: List[SearchCandidate], mode: str
    ) -> List[float]:
        if mode == "heuristic":
            return [heuristic_score(query_text, c) for c in head]

        model_scores = await asyncio.gather(
            *(self._model_score(query_text, c) for c in head)
        )
        if mode == "model":
            return list(model_scores)

        weight = self._config.rerank_model_weight
        return [
            weight * m + (1.0 - weight) * heuristic_score(query_text, c)
            for m, c in zip(model_scores, head)
        ]

    async def _model_score(self, query_text: str, candidate: SearchCandidate) -> float:
        key = rerank_cache_key(query_text, candidate.chunk_id)
        if self._cache is not None:
            cached = await asyncio.to_thread(self._cache.get, key)
            if cached is not None:
                return cached

        assert self._scorer is not None
        value = await self._scorer.score(query_text, candidate.chunk.text)
        value = max(0.0, min(1.0, float(value)))

        if self._cache is not None:
            await asyncio.to_thread(self._cache.set, key, value)
        return value

    def _fallback(self, reason: str, count: int) -> None:
        record_rerank_fallback()
        logger.warning(
            "Re-ranking unavailable, keeping incoming order",
            extra={"reason": reason, "candidates": count},
        )
