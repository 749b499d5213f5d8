"""
===============================================================================
FILE: crosscutting/metrics.py
===============================================================================

CRC CARD (Module)
-------------------------------------------------------------------------------
Name:
    Metrics (Prometheus), low-coupling observability

Responsibilities:
    - Define the engine's Prometheus metrics on a private registry.
    - Provide small, stable helpers to record events and durations.
    - Keep cardinality low (no query text, no conversation ids, no chunk ids).
    - Render the /metrics payload.

Collaborators:
    - application/orchestrator: stage latencies and terminal states.
    - application/fallback_chain: provider attempts, fallbacks, cool-downs.
    - application/embedding_service: embedding cache hits/misses.
    - application/hybrid_search: degraded retrieval.
    - application/cost_tracker: provider spend, dropped records.
    - infrastructure/analytics: dropped records.
===============================================================================
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

_registry = CollectorRegistry()

# ------------------------
# Pipeline
# ------------------------
_stage_latency = Histogram(
    "rag_engine_stage_latency_seconds",
    "Latency per pipeline stage (seconds)",
    ["stage"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=_registry,
)

_query_terminal_total = Counter(
    "rag_engine_query_terminal_total",
    "Queries by terminal state",
    ["state"],
    registry=_registry,
)

_retrieval_degraded_total = Counter(
    "rag_engine_retrieval_degraded_total",
    "Searches that lost one branch (semantic or lexical)",
    ["missing"],
    registry=_registry,
)

_rerank_fallback_total = Counter(
    "rag_engine_rerank_fallback_total",
    "Re-ranks that passed candidates through unchanged",
    registry=_registry,
)

_citation_violation_total = Counter(
    "rag_engine_citation_integrity_violation_total",
    "Citation markers dropped because they referenced missing sources",
    registry=_registry,
)

_citations_synthesized_total = Counter(
    "rag_engine_citations_synthesized_total",
    "Answers whose citation list was synthesized from the context",
    registry=_registry,
)

# ------------------------
# Providers
# ------------------------
_provider_attempts_total = Counter(
    "rag_engine_provider_attempts_total",
    "Provider attempts by outcome",
    ["provider", "outcome"],
    registry=_registry,
)

_provider_latency = Histogram(
    "rag_engine_provider_latency_seconds",
    "Latency of successful provider calls (seconds)",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=_registry,
)

_fallback_used_total = Counter(
    "rag_engine_fallback_used_total",
    "Requests served by a provider other than the first in the chain",
    registry=_registry,
)

_provider_cooldown_total = Counter(
    "rag_engine_provider_cooldown_total",
    "Times a provider entered cool-down",
    ["provider"],
    registry=_registry,
)

_provider_cost_usd_total = Counter(
    "rag_engine_provider_cost_usd_total",
    "Estimated spend on successful provider calls (USD)",
    ["provider", "model"],
    registry=_registry,
)

_provider_tokens_total = Counter(
    "rag_engine_provider_tokens_total",
    "Tokens billed on successful provider calls",
    ["provider", "model", "direction"],
    registry=_registry,
)

# ------------------------
# Embeddings
# ------------------------
_embedding_cache_hits = Counter(
    "rag_engine_embedding_cache_hit_total",
    "Embedding cache hits",
    ["kind"],
    registry=_registry,
)

_embedding_cache_misses = Counter(
    "rag_engine_embedding_cache_miss_total",
    "Embedding cache misses",
    ["kind"],
    registry=_registry,
)

_indexed_chunks_total = Counter(
    "rag_engine_indexed_chunks_total",
    "Chunks embedded by the background indexer",
    ["status"],
    registry=_registry,
)

# ------------------------
# Best-effort sinks
# ------------------------
_dropped_records_total = Counter(
    "rag_engine_dropped_records_total",
    "Records dropped by best-effort sinks",
    ["sink"],
    registry=_registry,
)


# -----------------------------------------------------------------------------
# Public helpers
# -----------------------------------------------------------------------------


def observe_stage_latency(stage: str, seconds: float) -> None:
    _stage_latency.labels(stage=stage).observe(seconds)


def record_query_terminal(state: str) -> None:
    _query_terminal_total.labels(state=state).inc()


def record_retrieval_degraded(missing: str) -> None:
    """`missing` is the branch that failed: "semantic" or "lexical"."""
    _retrieval_degraded_total.labels(missing=missing).inc()


def record_rerank_fallback(count: int = 1) -> None:
    _rerank_fallback_total.inc(count)


def record_citation_violation(count: int = 1) -> None:
    _citation_violation_total.inc(count)


def record_citations_synthesized(count: int = 1) -> None:
    _citations_synthesized_total.inc(count)


def record_provider_attempt(provider: str, outcome: str) -> None:
    _provider_attempts_total.labels(provider=provider, outcome=outcome).inc()


def observe_provider_latency(provider: str, seconds: float) -> None:
    _provider_latency.labels(provider=provider).observe(seconds)


def record_fallback_used(count: int = 1) -> None:
    _fallback_used_total.inc(count)


def record_provider_cooldown(provider: str) -> None:
    _provider_cooldown_total.labels(provider=provider).inc()


def record_provider_cost(
    provider: str, model: str, cost_usd: float, tokens_in: int, tokens_out: int
) -> None:
    _provider_cost_usd_total.labels(provider=provider, model=model).inc(max(0.0, cost_usd))
    _provider_tokens_total.labels(provider=provider, model=model, direction="in").inc(
        max(0, tokens_in)
    )
    _provider_tokens_total.labels(provider=provider, model=model, direction="out").inc(
        max(0, tokens_out)
    )


def record_embedding_cache_hit(count: int = 1, kind: str = "query") -> None:
    _embedding_cache_hits.labels(kind=kind).inc(count)


def record_embedding_cache_miss(count: int = 1, kind: str = "query") -> None:
    _embedding_cache_misses.labels(kind=kind).inc(count)


def record_indexed_chunks(status: str, count: int = 1) -> None:
    _indexed_chunks_total.labels(status=status).inc(count)


def record_dropped(sink: str, count: int = 1) -> None:
    _dropped_records_total.labels(sink=sink).inc(count)


# -----------------------------------------------------------------------------
# /metrics exposition
# -----------------------------------------------------------------------------


def get_metrics_response() -> tuple[bytes, str]:
    """Body and content type for /metrics."""
    return generate_latest(_registry), CONTENT_TYPE_LATEST
