"""
===============================================================================
CRC CARD: domain/entities.py
===============================================================================

Module:
    Domain entities (Document, Chunk, Embedding, SearchCandidate,
    AssembledContext, Citation, ProviderProfile, Generation*, AnswerResult)

Responsibilities:
    - Define the engine's core structures (no infrastructure).
    - Provide minimal helpers that keep simple invariants.
    - Keep clear types for application services and stores.

Collaborators:
    - domain.repositories: ChunkStore persists / returns Chunk.
    - application/*: build and consume these entities.
    - interfaces/api: serialize them into DTOs.

Principles:
    - No dependency on DB / Redis / FastAPI / HTTP clients.
    - Transient values (SearchCandidate, AssembledContext) live for one query.
===============================================================================
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

_WS_RE = re.compile(r"\s+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(text: str) -> str:
    """Collapses whitespace and trims. Basis for hashing and cache keys."""
    return _WS_RE.sub(" ", text or "").strip()


def compute_content_hash(text: str) -> str:
    """sha256 of the normalized text (dedup key)."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Document / Chunk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Document:
    """
    Source unit (page, PDF, product, API payload).

    Owned by the ingestion collaborator; the engine only sees it through
    the chunks that reference it.
    """

    document_id: str
    source_uri: str
    content_hash: str = ""
    last_modified: Optional[datetime] = None
    source_type: str = "page"
    title: Optional[str] = None


@dataclass
class Chunk:
    """
    Contiguous slice of a document's text.

    Versioning:
      - A chunk is never mutated in place; re-ingesting changed text at the
        same (document_id, ordinal) creates a new chunk and tombstones this one.
      - Tombstoned chunks stay readable so pinned citations keep resolving.

    Embeddings:
      - Keyed by generating model version; vectors of different versions are
        never compared.
    """

    document_id: str
    ordinal: int
    text: str
    token_count: int = 0
    content_hash: str = ""
    chunk_id: str = ""
    source_uri: str = ""
    title: Optional[str] = None
    source_type: str = "page"
    freshness_at: datetime = field(default_factory=_utcnow)
    document_ids: Tuple[str, ...] = ()
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    version: int = 1
    tombstoned_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = compute_content_hash(self.text)
        if not self.document_ids:
            self.document_ids = (self.document_id,)

    @property
    def is_tombstoned(self) -> bool:
        return self.tombstoned_at is not None

    def embedding_for(self, model_version: str) -> Optional[List[float]]:
        return self.embeddings.get(model_version)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of ChunkStore.upsert."""

    chunk_id: str
    status: str  # created | unchanged | superseded | deduplicated
    tombstoned_chunk_id: Optional[str] = None


@dataclass(frozen=True)
class Embedding:
    """Fixed-dimension vector tied to the model version that produced it."""

    vector: Tuple[float, ...]
    model_version: str

    @property
    def dimension(self) -> int:
        return len(self.vector)


# ---------------------------------------------------------------------------
# Retrieval (transient, one query lifetime)
# ---------------------------------------------------------------------------


@dataclass
class SearchCandidate:
    """Hybrid Search result for one chunk."""

    chunk: Chunk
    semantic_score: float = 0.0
    lexical_score: float = 0.0
    combined_score: float = 0.0
    rerank_score: Optional[float] = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def score(self) -> float:
        """Best available relevance: rerank score when present."""
        return self.rerank_score if self.rerank_score is not None else self.combined_score


@dataclass(frozen=True)
class AssembledChunk:
    candidate: SearchCandidate
    tokens: int

    @property
    def chunk(self) -> Chunk:
        return self.candidate.chunk


@dataclass(frozen=True)
class AssembledContext:
    """
    Ordered chunks selected for one generation call.

    Invariant: token_total (chunk tokens + overhead) <= token_budget.
    """

    items: Tuple[AssembledChunk, ...]
    token_total: int
    token_budget: int
    overhead_tokens: int = 0
    excluded: Tuple[str, ...] = ()

    @property
    def chunks(self) -> List[Chunk]:
        return [item.chunk for item in self.items]

    @property
    def chunk_ids(self) -> FrozenSet[str]:
        return frozenset(item.chunk.chunk_id for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class Citation:
    """Verifiable source reference attached to an answer."""

    source_uri: str
    chunk_id: str
    label: str
    title: Optional[str] = None
    marker: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_uri": self.source_uri,
            "chunk_id": self.chunk_id,
            "label": self.label,
            "title": self.title,
            "marker": self.marker,
        }


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    SELF_HOSTED = "self_hosted"
    FAKE = "fake"


CAPABILITY_CHAT = "chat"
CAPABILITY_EMBEDDINGS = "embeddings"
CAPABILITY_RERANK = "rerank"


@dataclass(frozen=True)
class ProviderProfile:
    """
    Provider + model as seen by the router.

    `provider_id` identifies the configured endpoint (credentials, base URL);
    several profiles may share it (one per model).
    """

    provider_id: str
    kind: ProviderKind
    model_id: str
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0
    avg_latency_ms: float = 0.0
    capabilities: FrozenSet[str] = frozenset({CAPABILITY_CHAT})
    max_context_tokens: int = 8192
    timeout_seconds: float = 10.0
    embedding_dimension: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.provider_id}:{self.model_id}"

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def cost_for(self, tokens_in: int, tokens_out: int) -> float:
        return (tokens_in / 1000.0) * self.cost_per_1k_input + (
            tokens_out / 1000.0
        ) * self.cost_per_1k_output


class RequestKind(str, Enum):
    ANSWER = "answer"
    RERANK = "rerank"
    EMBEDDING = "embedding"


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    system_prompt: str = ""
    max_tokens: int = 1000
    temperature: float = 0.3
    request_kind: RequestKind = RequestKind.ANSWER
    conversation_id: str = ""
    min_response_chars: int = 0


@dataclass(frozen=True)
class GenerationResult:
    text: str
    provider_id: str
    model_id: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class ProviderAttempt:
    """One try against one provider (diagnostics for AllProvidersFailed)."""

    provider_id: str
    model_id: str
    success: bool
    latency_ms: float = 0.0
    error_kind: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error_kind": self.error_kind,
            "error": self.error,
        }


@dataclass(frozen=True)
class CostEntry:
    provider_id: str
    model_id: str
    tokens_in: int
    tokens_out: int
    conversation_id: str
    cost_usd: float = 0.0
    recorded_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Query lifecycle
# ---------------------------------------------------------------------------


class QueryState(str, Enum):
    RECEIVED = "received"
    SEARCHING = "searching"
    RERANKING = "reranking"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMPLETED = "completed"
    NO_GROUNDING_AVAILABLE = "no_grounding_available"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {QueryState.COMPLETED, QueryState.NO_GROUNDING_AVAILABLE, QueryState.FAILED}
)


class ApprovalStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass
class AnswerResult:
    """Final outcome of RagOrchestrator.answer."""

    query_id: str
    conversation_id: str
    text: str
    state: QueryState
    citations: List[Citation] = field(default_factory=list)
    provider_used: Optional[str] = None
    model_used: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    error: Optional[Exception] = None
    attempts: List[ProviderAttempt] = field(default_factory=list)
    state_history: List[QueryState] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    integrity_violations: List[str] = field(default_factory=list)
    citations_synthesized: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.NOT_REQUIRED
    degraded: List[str] = field(default_factory=list)

    @property
    def usage(self) -> Dict[str, int]:
        return {"tokens_in": self.tokens_in, "tokens_out": self.tokens_out}

    @property
    def error_code(self) -> Optional[str]:
        return getattr(self.error, "error_code", None) if self.error else None


@dataclass(frozen=True)
class QueryEvent:
    """Per-query analytics event (fire and forget)."""

    query_id: str
    conversation_id: str
    query_text: str
    answer: str
    state: str
    citations: Tuple[Dict[str, Any], ...]
    provider_used: Optional[str]
    model_used: Optional[str]
    tokens_in: int
    tokens_out: int
    latency_ms: float
    occurred_at: datetime = field(default_factory=_utcnow)
