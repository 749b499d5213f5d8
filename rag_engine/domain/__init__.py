"""
===============================================================================
CRC CARD: domain/__init__.py
===============================================================================

Module:
    Domain layer exports

Responsibilities:
    - Centralize entity and port exports for application/interfaces.
    - Keep the domain surface stable.

Collaborators:
    - domain.entities: Chunk, SearchCandidate, AnswerResult, ...
    - domain.repositories: ChunkStore port
    - domain.services: provider / scorer / gate / sink ports
    - domain.cache: cache ports

Rules:
    - Only re-exports domain contracts; never imports infrastructure.
===============================================================================
"""

from .cache import EmbeddingCachePort, ScoreCachePort
from .engine_config import EngineConfig
from .entities import (
    AnswerResult,
    ApprovalStatus,
    AssembledChunk,
    AssembledContext,
    Chunk,
    Citation,
    CostEntry,
    Document,
    Embedding,
    GenerationRequest,
    GenerationResult,
    ProviderAttempt,
    ProviderKind,
    ProviderProfile,
    QueryEvent,
    QueryState,
    RequestKind,
    SearchCandidate,
    UpsertResult,
)
from .repositories import ChunkStore
from .services import (
    AnalyticsEmitter,
    AnalyticsSink,
    ApprovalGate,
    CostSink,
    PromptRenderer,
    ProviderClient,
    RelevanceScorer,
    TokenCounter,
)

__all__ = [
    # Entities
    "AnswerResult",
    "ApprovalStatus",
    "AssembledChunk",
    "AssembledContext",
    "Chunk",
    "Citation",
    "CostEntry",
    "Document",
    "Embedding",
    "GenerationRequest",
    "GenerationResult",
    "ProviderAttempt",
    "ProviderKind",
    "ProviderProfile",
    "QueryEvent",
    "QueryState",
    "RequestKind",
    "SearchCandidate",
    "UpsertResult",
    "EngineConfig",
    # Ports
    "ChunkStore",
    "ProviderClient",
    "RelevanceScorer",
    "TokenCounter",
    "ApprovalGate",
    "AnalyticsSink",
    "AnalyticsEmitter",
    "CostSink",
    "PromptRenderer",
    "EmbeddingCachePort",
    "ScoreCachePort",
]
