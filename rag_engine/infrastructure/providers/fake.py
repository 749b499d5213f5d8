"""
Name: Fake provider (deterministic test double)

What it is
----------
In-process ProviderClient for tests, CI and local development. No network,
no cost, same input -> same output.

Behavior
--------
  - embed(): feature-hashed bag of words, L2-normalized. Texts sharing words
    get similar vectors, so retrieval behaves plausibly.
  - generate(answer): extractive answer quoting the first tagged sources of the
    prompt with their [S#] markers.
  - generate(rerank): lexical overlap between "Query:" and "Passage:" as a
    0.0-1.0 score string.

Constraints
-----------
  - `fail_with` lets tests script failures without mocking
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import Sequence

from ...domain.entities import (
    GenerationRequest,
    GenerationResult,
    ProviderProfile,
    RequestKind,
)
from ...domain.services import EmbeddingResponse

DEFAULT_DIMENSION = 64

_WORD_RE = re.compile(r"[a-z0-9]+")
_SOURCE_BLOCK_RE = re.compile(r"^\[(S\d+)\][^\n]*\n(.*?)(?=^\[S\d+\]|\Z)", re.M | re.S)
_RERANK_RE = re.compile(r"Query:\s*(.*?)\n+Passage:\s*(.*?)\n+Score", re.S)


def _tokens(text: str) -> list[str]:
    return _WORD_RE.findall((text or "").lower())


def hashed_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> list[float]:
    """Deterministic bag-of-words vector (feature hashing + L2 norm)."""
    vector = [0.0] * dimension
    for token in _tokens(text):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimension
        sign = 1.0 if digest[4] % 2 == 0 else -1.0
        vector[bucket] += sign
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


def _overlap_score(query: str, passage: str) -> float:
    q = set(_tokens(query))
    if not q:
        return 0.0
    p = set(_tokens(passage))
    return round(len(q & p) / len(q), 3)


class FakeProviderClient:
    """R: Deterministic ProviderClient."""

    def __init__(
        self,
        *,
        provider_id: str = "fake",
        dimension: int = DEFAULT_DIMENSION,
        fail_with: Exception | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self._dimension = dimension
        self._fail_with = fail_with
        self._delay = delay_seconds
        self.generate_calls = 0
        self.embed_calls = 0

    async def _maybe_fail(self) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail_with is not None:
            raise self._fail_with

    async def generate(
        self, request: GenerationRequest, profile: ProviderProfile
    ) -> GenerationResult:
        self.generate_calls += 1
        await self._maybe_fail()

        if request.request_kind == RequestKind.RERANK:
            match = _RERANK_RE.search(request.prompt)
            score = _overlap_score(match.group(1), match.group(2)) if match else 0.0
            text = f"{score:.2f}"
        else:
            text = self._extractive_answer(request.prompt)

        return GenerationResult(
            text=text,
            provider_id=self.provider_id,
            model_id=profile.model_id,
            tokens_in=len(_tokens(request.system_prompt + " " + request.prompt)),
            tokens_out=len(_tokens(text)),
            latency_ms=0.0,
            finish_reason="stop",
        )

    def _extractive_answer(self, prompt: str) -> str:
        sentences = []
        for marker, body in _SOURCE_BLOCK_RE.findall(prompt)[:2]:
            first = body.strip().split(". ")[0].strip().rstrip(".")
            if first:
                sentences.append(f"{first} [{marker}].")
        if not sentences:
            return "I could not find this in the available content."
        return "According to the available content: " + " ".join(sentences)

    async def embed(
        self, texts: Sequence[str], profile: ProviderProfile
    ) -> EmbeddingResponse:
        self.embed_calls += 1
        await self._maybe_fail()
        dimension = profile.embedding_dimension or self._dimension
        return EmbeddingResponse(
            vectors=[hashed_embedding(text, dimension) for text in texts],
            model_id=profile.model_id,
            tokens_in=sum(len(_tokens(t)) for t in texts),
        )

    async def aclose(self) -> None:
        return None
