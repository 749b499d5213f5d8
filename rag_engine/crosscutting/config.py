"""
Name: Engine Configuration (Settings)

Responsibilities:
  - Centralized, typed configuration using pydantic-settings
  - Validate environment variables at startup
  - Provide defaults for routing, retrieval, assembly and resilience knobs

Collaborators:
  - container.py: turns Settings into the frozen EngineConfig and wires adapters
  - api/main.py: reads settings for startup and limits
  - crosscutting/logger.py: log level and format

Constraints:
  - No business logic, pure configuration
  - Provider credentials never leave this object except through the container

Notes:
  - Singleton via lru_cache
  - Comma-separated lists (tiers, indicators, self-hosted models) keep env simple
"""

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    Attributes:
        openai_api_key / anthropic_api_key / google_api_key: provider credentials
        self_hosted_base_url: OpenAI-compatible endpoint (enables self-hosted)
        fake_providers: deterministic in-process providers (tests / local dev)
        provider_profiles_json: JSON list overriding the built-in catalog
        tier_simple / tier_medium / tier_complex: comma-separated model ids
        semantic_weight / lexical_weight: hybrid score weights
        default_token_budget: context budget when the caller sends none
        query_deadline_seconds: overall per-query deadline
        chunk_store: memory | postgres
        redis_url: Redis for the query embedding cache (optional)
    """

    # Environment
    app_env: str = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Providers - credentials
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"
    google_api_key: str = ""
    self_hosted_base_url: str = ""
    self_hosted_api_key: str = ""
    self_hosted_models: str = ""
    self_hosted_embedding_model: str = ""
    fake_providers: bool = False
    provider_profiles_json: str = ""
    provider_timeout_seconds: float = 10.0

    # Model Router
    tier_simple: str = ""
    tier_medium: str = ""
    tier_complex: str = ""
    simple_max_words: int = 50
    medium_max_words: int = 200
    complex_indicators: str = ""
    forced_provider: str = ""
    forced_model: str = ""

    # Embeddings
    embedding_model_version: str = ""
    query_embedding_ttl_seconds: int = 300
    embedding_max_text_chars: int = 8000
    embedding_max_batch_size: int = 100
    indexing_concurrency: int = 4
    indexing_batch_size: int = 32

    # Hybrid search
    semantic_weight: float = 0.7
    lexical_weight: float = 0.3
    combine_mode: str = "weighted"
    rrf_k: int = 60
    candidate_multiplier: int = 2
    min_combined_score: float = 0.0
    search_top_k: int = 10

    # Re-ranker
    rerank_mode: str = "model"
    rerank_limit: int = 20
    rerank_model_weight: float = 0.7
    rerank_cache_ttl_seconds: int = 3600

    # Context assembly
    default_token_budget: int = 3000
    prompt_overhead_tokens: int = 250
    per_chunk_overhead_tokens: int = 12
    max_chunk_tokens: int = 1024
    assembly_strategy: str = "greedy"
    max_chunks: int = 10
    min_chunk_score: float = 0.0
    quality_threshold: float = 0.7

    # Generation
    generation_max_tokens: int = 1000
    generation_temperature: float = 0.3
    min_response_chars: int = 20
    trivial_query_words: int = 3
    prompt_version: str = "v1"
    prompt_lang: str = "en"

    # Retry / resilience
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0
    provider_cooldown_seconds: float = 300.0

    # Deadlines
    query_deadline_seconds: float = 30.0
    search_deadline_fraction: float = 0.3
    rerank_deadline_fraction: float = 0.25

    # Citations / policy
    citation_style: str = "inline"
    synthesize_citations: bool = True
    require_approval: bool = False

    # Analytics / cost
    analytics_queue_size: int = 1000
    cost_queue_size: int = 10_000

    # Storage
    chunk_store: str = "memory"
    database_url: str = ""
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    db_statement_timeout_ms: int = 10_000
    fts_language: str = "english"
    redis_url: str = ""
    embedding_cache_max_size: int = 10_000
    freshness_threshold_days: int = 90

    # API limits
    max_query_chars: int = 2_000
    max_chunk_chars: int = 20_000

    @field_validator("semantic_weight", "lexical_weight")
    @classmethod
    def weight_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("score weights must be >= 0")
        return v

    @field_validator("combine_mode")
    @classmethod
    def combine_mode_valid(cls, v: str) -> str:
        mode = (v or "weighted").strip().lower()
        if mode not in {"weighted", "rrf"}:
            raise ValueError("combine_mode must be weighted or rrf")
        return mode

    @field_validator("rerank_mode")
    @classmethod
    def rerank_mode_valid(cls, v: str) -> str:
        mode = (v or "model").strip().lower()
        if mode not in {"disabled", "heuristic", "model", "combined"}:
            raise ValueError("rerank_mode must be disabled, heuristic, model or combined")
        return mode

    @field_validator("assembly_strategy")
    @classmethod
    def assembly_strategy_valid(cls, v: str) -> str:
        strategy = (v or "greedy").strip().lower()
        if strategy not in {"greedy", "balanced", "quality"}:
            raise ValueError("assembly_strategy must be greedy, balanced or quality")
        return strategy

    @field_validator("citation_style")
    @classmethod
    def citation_style_valid(cls, v: str) -> str:
        style = (v or "inline").strip().lower()
        if style not in {"inline", "footnote", "end", "none"}:
            raise ValueError("citation_style must be inline, footnote, end or none")
        return style

    @field_validator("chunk_store")
    @classmethod
    def chunk_store_valid(cls, v: str) -> str:
        store = (v or "memory").strip().lower()
        if store not in {"memory", "postgres"}:
            raise ValueError("chunk_store must be memory or postgres")
        return store

    @field_validator("search_deadline_fraction", "rerank_deadline_fraction")
    @classmethod
    def fraction_valid(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError("deadline fractions must be in (0, 1)")
        return v

    @model_validator(mode="after")
    def validate_weights(self):
        if self.semantic_weight + self.lexical_weight <= 0:
            raise ValueError("semantic_weight + lexical_weight must be > 0")
        return self

    @model_validator(mode="after")
    def validate_provider_requirements(self):
        if self.fake_providers or self.provider_profiles_json.strip():
            return self
        if not any(
            (
                self.openai_api_key,
                self.anthropic_api_key,
                self.google_api_key,
                self.self_hosted_base_url,
            )
        ):
            raise ValueError(
                "At least one provider is required (OPENAI_API_KEY, ANTHROPIC_API_KEY, "
                "GOOGLE_API_KEY or SELF_HOSTED_BASE_URL) unless FAKE_PROVIDERS=1"
            )
        return self

    @model_validator(mode="after")
    def validate_store_requirements(self):
        if self.chunk_store == "postgres" and not self.database_url:
            raise ValueError("DATABASE_URL is required when CHUNK_STORE=postgres")
        return self

    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @staticmethod
    def split_list(raw: str) -> tuple[str, ...]:
        """Parse a comma-separated value into a tuple (empty items dropped)."""
        return tuple(item.strip() for item in (raw or "").split(",") if item.strip())

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get singleton Settings instance.

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()
