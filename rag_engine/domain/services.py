"""
===============================================================================
CRC CARD: domain/services.py
===============================================================================

Module:
    External service ports (Protocols)

Responsibilities:
    - Define the contracts for provider clients, relevance scoring, token
      counting, prompts, approval, analytics and cost sinks.
    - Shield application services from SDK / HTTP details.

Collaborators:
    - infrastructure/providers/*: ProviderClient variants.
    - infrastructure/analytics.py: AnalyticsSink implementations.
    - application/*: consume these ports.

Rules:
    - Interfaces only.
    - Provider-agnostic signatures.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from .entities import (
    AnswerResult,
    ApprovalStatus,
    CostEntry,
    GenerationRequest,
    GenerationResult,
    ProviderProfile,
    QueryEvent,
)


@dataclass(frozen=True)
class EmbeddingResponse:
    """Raw vectors from one provider embedding call."""

    vectors: list[list[float]]
    model_id: str
    tokens_in: int = 0


class ProviderClient(Protocol):
    """
    Uniform call surface of one configured provider endpoint.

    Implementations raise ProviderTransientError / ProviderPermanentError /
    ProviderConfigError; they never retry internally.
    """

    provider_id: str

    async def generate(
        self, request: GenerationRequest, profile: ProviderProfile
    ) -> GenerationResult: ...

    async def embed(
        self, texts: Sequence[str], profile: ProviderProfile
    ) -> EmbeddingResponse: ...

    async def aclose(self) -> None: ...


class RelevanceScorer(Protocol):
    """Cross-attention style (query, passage) scorer used by the re-ranker."""

    async def score(self, query: str, passage: str) -> float:
        """Relevance in [0, 1]."""
        ...


class TokenCounter(Protocol):
    """Tokenizer of the target generation model."""

    def count(self, text: str) -> int: ...


class ApprovalGate(Protocol):
    """Optional human-review overlay applied after citation validation."""

    async def review(self, result: AnswerResult) -> ApprovalStatus: ...


class AnalyticsSink(Protocol):
    """Consumer of per-query events (lead scoring, analytics)."""

    async def publish(self, event: QueryEvent) -> None: ...


class CostSink(Protocol):
    """Write side of cost accounting (read side lives in analytics)."""

    def write(self, entry: CostEntry) -> None: ...


class PromptRenderer(Protocol):
    """System prompt + user prompt template for grounded answers."""

    def system_prompt(self) -> str: ...

    def format(self, context: str, query: str) -> str: ...


class AnalyticsEmitter(Protocol):
    """Non-blocking front of an AnalyticsSink (bounded, drop-and-log)."""

    def emit(self, event: QueryEvent) -> bool: ...

    async def flush(self) -> None: ...
