"""
===============================================================================
CRC CARD: rag_engine/container.py (Composition Root / manual DI)
===============================================================================

Responsibilities:
  - Turn Settings into the frozen EngineConfig (profiles, tiers, weights).
  - Compose stores, caches, provider clients, the fallback chain and the
    orchestrator.
  - Expose factories for FastAPI (Depends) and scripts.
  - Keep heavy resources as lazy singletons (lru_cache).

Collaborators:
  - crosscutting.config.get_settings
  - domain.* (ports, EngineConfig)
  - infrastructure.* (implementations)
  - application.* (services)

Notes:
  - No business logic here.
  - No FastAPI imports (factories only).
===============================================================================
"""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .application.approval import AutoApproveGate, ReviewQueueGate
from .application.citations import CitationTracker
from .application.cost_tracker import CostTracker, LoggingCostSink
from .application.embedding_service import EmbeddingService
from .application.fallback_chain import CooldownRegistry, FallbackChain
from .application.indexing import IndexingService
from .application.orchestrator import RagOrchestrator
from .crosscutting.config import Settings, get_settings
from .crosscutting.exceptions import ConfigurationError
from .crosscutting.logger import logger
from .domain.engine_config import DEFAULT_COMPLEX_INDICATORS, EngineConfig
from .domain.entities import (
    CAPABILITY_CHAT,
    CAPABILITY_EMBEDDINGS,
    ProviderKind,
    ProviderProfile,
)
from .domain.repositories import ChunkStore
from .domain.services import ApprovalGate, ProviderClient
from .infrastructure.analytics import LoggingAnalyticsSink, QueueAnalyticsEmitter
from .infrastructure.cache import (
    CacheBackend,
    EmbeddingCache,
    ScoreCache,
    create_cache_backend,
)
from .infrastructure.prompts.loader import get_prompt_loader
from .infrastructure.providers.catalog import (
    DEFAULT_EMBEDDING_MODELS,
    DEFAULT_TIERS,
    FAKE_TIERS,
    catalog_profiles,
    self_hosted_profiles,
)
from .infrastructure.providers.registry import build_provider_clients
from .infrastructure.tokenizers import ConservativeTokenCounter, token_counter_for


# =============================================================================
# EngineConfig
# =============================================================================
class _ProfileModel(BaseModel):
    """One entry of PROVIDER_PROFILES_JSON."""

    provider_id: str
    kind: ProviderKind
    model_id: str
    cost_per_1k_input: float = Field(default=0.0, ge=0)
    cost_per_1k_output: float = Field(default=0.0, ge=0)
    avg_latency_ms: float = Field(default=0.0, ge=0)
    capabilities: List[str] = Field(default_factory=lambda: [CAPABILITY_CHAT])
    max_context_tokens: int = Field(default=8192, gt=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    embedding_dimension: Optional[int] = Field(default=None, gt=0)

    def to_profile(self, default_timeout: float) -> ProviderProfile:
        return ProviderProfile(
            provider_id=self.provider_id,
            kind=self.kind,
            model_id=self.model_id,
            cost_per_1k_input=self.cost_per_1k_input,
            cost_per_1k_output=self.cost_per_1k_output,
            avg_latency_ms=self.avg_latency_ms,
            capabilities=frozenset(self.capabilities),
            max_context_tokens=self.max_context_tokens,
            timeout_seconds=self.timeout_seconds or default_timeout,
            embedding_dimension=self.embedding_dimension,
        )


_PROFILE_LIST = TypeAdapter(List[_ProfileModel])


def build_profiles(settings: Settings) -> tuple[ProviderProfile, ...]:
    """
    R: Provider profiles from PROVIDER_PROFILES_JSON, else from the built-in
    catalog for every provider with credentials (plus fakes when enabled).
    """
    timeout = settings.provider_timeout_seconds
    raw = settings.provider_profiles_json.strip()
    if raw:
        try:
            models = _PROFILE_LIST.validate_json(raw)
        except ValidationError as exc:
            raise ConfigurationError(
                "PROVIDER_PROFILES_JSON is invalid", original_error=exc
            ) from exc
        return tuple(m.to_profile(timeout) for m in models)

    profiles: List[ProviderProfile] = []
    if settings.openai_api_key:
        profiles += catalog_profiles(ProviderKind.OPENAI, timeout_seconds=timeout)
    if settings.anthropic_api_key:
        profiles += catalog_profiles(ProviderKind.ANTHROPIC, timeout_seconds=timeout)
    if settings.google_api_key:
        profiles += catalog_profiles(ProviderKind.GOOGLE, timeout_seconds=timeout)
    if settings.self_hosted_base_url:
        profiles += self_hosted_profiles(
            list(settings.split_list(settings.self_hosted_models)),
            settings.self_hosted_embedding_model or None,
            timeout_seconds=max(timeout, 20.0),
        )
    if settings.fake_providers:
        profiles += catalog_profiles(ProviderKind.FAKE, timeout_seconds=timeout)
    return tuple(profiles)


def _default_embedding_version(profiles: Iterable[ProviderProfile]) -> str:
    embedding = [p for p in profiles if p.supports(CAPABILITY_EMBEDDINGS)]
    for kind, model_id in DEFAULT_EMBEDDING_MODELS:
        if any(p.kind == kind and p.model_id == model_id for p in embedding):
            return model_id
    if embedding:
        return embedding[0].model_id
    raise ConfigurationError("No embedding-capable provider profile configured")


def build_engine_config(settings: Settings) -> EngineConfig:
    profiles = build_profiles(settings)
    if not any(p.supports(CAPABILITY_CHAT) for p in profiles):
        raise ConfigurationError("No chat-capable provider profile configured")

    only_fake = all(p.kind == ProviderKind.FAKE for p in profiles)
    tiers = FAKE_TIERS if only_fake else DEFAULT_TIERS

    def tier(raw: str, name: str) -> tuple[str, ...]:
        return settings.split_list(raw) or tiers[name]

    return EngineConfig(
        profiles=profiles,
        tier_simple=tier(settings.tier_simple, "simple"),
        tier_medium=tier(settings.tier_medium, "medium"),
        tier_complex=tier(settings.tier_complex, "complex"),
        simple_max_words=settings.simple_max_words,
        medium_max_words=settings.medium_max_words,
        complex_indicators=(
            settings.split_list(settings.complex_indicators) or DEFAULT_COMPLEX_INDICATORS
        ),
        forced_provider=settings.forced_provider or None,
        forced_model=settings.forced_model or None,
        embedding_model_version=(
            settings.embedding_model_version or _default_embedding_version(profiles)
        ),
        query_embedding_ttl_seconds=settings.query_embedding_ttl_seconds,
        embedding_max_text_chars=settings.embedding_max_text_chars,
        embedding_max_batch_size=settings.embedding_max_batch_size,
        semantic_weight=settings.semantic_weight,
        lexical_weight=settings.lexical_weight,
        combine_mode=settings.combine_mode,
        rrf_k=settings.rrf_k,
        candidate_multiplier=settings.candidate_multiplier,
        min_combined_score=settings.min_combined_score,
        search_top_k=settings.search_top_k,
        rerank_mode=settings.rerank_mode,
        rerank_limit=settings.rerank_limit,
        rerank_model_weight=settings.rerank_model_weight,
        rerank_cache_ttl_seconds=settings.rerank_cache_ttl_seconds,
        default_token_budget=settings.default_token_budget,
        prompt_overhead_tokens=settings.prompt_overhead_tokens,
        per_chunk_overhead_tokens=settings.per_chunk_overhead_tokens,
        max_chunk_tokens=settings.max_chunk_tokens,
        assembly_strategy=settings.assembly_strategy,
        max_chunks=settings.max_chunks,
        min_chunk_score=settings.min_chunk_score,
        quality_threshold=settings.quality_threshold,
        generation_max_tokens=settings.generation_max_tokens,
        generation_temperature=settings.generation_temperature,
        min_response_chars=settings.min_response_chars,
        trivial_query_words=settings.trivial_query_words,
        provider_cooldown_seconds=settings.provider_cooldown_seconds,
        retry_max_attempts=settings.retry_max_attempts,
        retry_base_delay_seconds=settings.retry_base_delay_seconds,
        retry_max_delay_seconds=settings.retry_max_delay_seconds,
        query_deadline_seconds=settings.query_deadline_seconds,
        search_deadline_fraction=settings.search_deadline_fraction,
        rerank_deadline_fraction=settings.rerank_deadline_fraction,
        citation_style=settings.citation_style,
        synthesize_citations=settings.synthesize_citations,
        require_approval=settings.require_approval,
    )


@lru_cache(maxsize=1)
def get_engine_config() -> EngineConfig:
    config = build_engine_config(get_settings())
    logger.info(
        "Engine config built",
        extra={
            "profiles": [p.key for p in config.profiles],
            "embedding_model_version": config.embedding_model_version,
            "rerank_mode": config.rerank_mode,
        },
    )
    return config


# =============================================================================
# Storage + caches
# =============================================================================
@lru_cache(maxsize=1)
def get_chunk_store() -> ChunkStore:
    settings = get_settings()
    config = get_engine_config()
    if settings.chunk_store == "postgres":
        from .infrastructure.db.pool import init_pool
        from .infrastructure.store.postgres import PostgresChunkStore, ensure_schema

        ensure_schema(settings.database_url, fts_language=settings.fts_language)
        pool = init_pool(
            settings.database_url,
            settings.db_pool_min_size,
            settings.db_pool_max_size,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )
        return PostgresChunkStore(
            pool,
            fts_language=settings.fts_language,
            max_chunk_tokens=config.max_chunk_tokens,
            token_counter=ConservativeTokenCounter(),
        )

    from .infrastructure.store.in_memory import InMemoryChunkStore

    return InMemoryChunkStore(
        max_chunk_tokens=config.max_chunk_tokens,
        token_counter=ConservativeTokenCounter(),
    )


@lru_cache(maxsize=1)
def get_cache_backend() -> CacheBackend:
    settings = get_settings()
    return create_cache_backend(settings.redis_url, max_size=settings.embedding_cache_max_size)


@lru_cache(maxsize=1)
def get_embedding_cache() -> EmbeddingCache:
    return EmbeddingCache(
        get_cache_backend(), ttl_seconds=get_engine_config().query_embedding_ttl_seconds
    )


@lru_cache(maxsize=1)
def get_score_cache() -> ScoreCache:
    return ScoreCache(
        get_cache_backend(), ttl_seconds=get_engine_config().rerank_cache_ttl_seconds
    )


# =============================================================================
# Providers
# =============================================================================
@lru_cache(maxsize=1)
def get_provider_clients() -> dict[str, ProviderClient]:
    return build_provider_clients(get_engine_config().profiles, get_settings())


@lru_cache(maxsize=1)
def get_cost_sink() -> LoggingCostSink:
    return LoggingCostSink()


@lru_cache(maxsize=1)
def get_cost_tracker() -> CostTracker:
    config = get_engine_config()
    return CostTracker(
        get_cost_sink(),
        profile_lookup=config.find_profile,
        maxsize=get_settings().cost_queue_size,
    )


@lru_cache(maxsize=1)
def get_fallback_chain() -> FallbackChain:
    config = get_engine_config()
    return FallbackChain(
        get_provider_clients(),
        cost_tracker=get_cost_tracker(),
        cooldowns=CooldownRegistry(period_seconds=config.provider_cooldown_seconds),
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
    )


# =============================================================================
# Application services
# =============================================================================
@lru_cache(maxsize=1)
def get_embedding_service() -> EmbeddingService:
    return EmbeddingService(
        get_fallback_chain(), get_engine_config(), cache=get_embedding_cache()
    )


@lru_cache(maxsize=1)
def get_indexing_service() -> IndexingService:
    settings = get_settings()
    return IndexingService(
        get_chunk_store(),
        get_embedding_service(),
        concurrency=settings.indexing_concurrency,
        batch_size=settings.indexing_batch_size,
    )


@lru_cache(maxsize=1)
def get_analytics_emitter() -> QueueAnalyticsEmitter:
    return QueueAnalyticsEmitter(
        LoggingAnalyticsSink(), maxsize=get_settings().analytics_queue_size
    )


@lru_cache(maxsize=1)
def get_approval_gate() -> ApprovalGate:
    if get_engine_config().require_approval:
        return ReviewQueueGate()
    return AutoApproveGate()


@lru_cache(maxsize=1)
def get_citation_tracker() -> CitationTracker:
    return CitationTracker()


@lru_cache(maxsize=1)
def get_orchestrator() -> RagOrchestrator:
    return RagOrchestrator(
        get_engine_config(),
        store=get_chunk_store(),
        chain=get_fallback_chain(),
        prompts=get_prompt_loader(),
        token_counter_for=token_counter_for,
        citations=get_citation_tracker(),
        embedding_cache=get_embedding_cache(),
        score_cache=get_score_cache(),
        approval_gate=get_approval_gate(),
        analytics=get_analytics_emitter(),
        cost_tracker=get_cost_tracker(),
    )


_FACTORIES = (
    get_engine_config,
    get_chunk_store,
    get_cache_backend,
    get_embedding_cache,
    get_score_cache,
    get_provider_clients,
    get_cost_sink,
    get_cost_tracker,
    get_fallback_chain,
    get_embedding_service,
    get_indexing_service,
    get_analytics_emitter,
    get_approval_gate,
    get_citation_tracker,
    get_orchestrator,
)


def reset_container() -> None:
    """R: Drops every cached singleton (tests, settings reload)."""
    for factory in _FACTORIES:
        factory.cache_clear()
    get_prompt_loader.cache_clear()
