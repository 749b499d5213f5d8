"""
===============================================================================
CRC CARD: domain/engine_config.py
===============================================================================

Name:
    EngineConfig (immutable per-query configuration value)

Responsibilities:
    - Carry provider profiles, model tiers, score weights, token budgets,
      deadlines and policy flags as one frozen value.
    - Offer lookups used by the router and the fallback chain.

Collaborators:
    - container.build_engine_config(): builds it from Settings.
    - application/orchestrator: receives it explicitly at query start.

Constraints:
    - Frozen: never mutated mid-query. Overrides go through
      dataclasses.replace(), producing a new value.
===============================================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .entities import ProviderProfile

DEFAULT_COMPLEX_INDICATORS: Tuple[str, ...] = (
    "explain",
    "analyze",
    "compare",
    "difference",
    "how does",
    "why",
    "what is the relationship",
    "describe",
    "detail",
)

COMPLEXITY_LEVELS: Tuple[str, ...] = ("simple", "medium", "complex")
COST_PREFERENCES: Tuple[str, ...] = ("cost", "balanced", "quality")


@dataclass(frozen=True)
class EngineConfig:
    profiles: Tuple[ProviderProfile, ...] = ()

    # Model Router
    tier_simple: Tuple[str, ...] = ()
    tier_medium: Tuple[str, ...] = ()
    tier_complex: Tuple[str, ...] = ()
    simple_max_words: int = 50
    medium_max_words: int = 200
    complex_indicators: Tuple[str, ...] = DEFAULT_COMPLEX_INDICATORS
    forced_provider: Optional[str] = None
    forced_model: Optional[str] = None

    # Embeddings
    embedding_model_version: str = "fake-embedding-v1"
    query_embedding_ttl_seconds: int = 300
    embedding_max_text_chars: int = 8000
    embedding_max_batch_size: int = 100

    # Hybrid Search
    semantic_weight: float = 0.7
    lexical_weight: float = 0.3
    combine_mode: str = "weighted"  # weighted | rrf
    rrf_k: int = 60
    candidate_multiplier: int = 2
    min_combined_score: float = 0.0
    search_top_k: int = 10

    # Re-ranker
    rerank_mode: str = "model"  # disabled | heuristic | model | combined
    rerank_limit: int = 20
    rerank_model_weight: float = 0.7
    rerank_cache_ttl_seconds: int = 3600

    # Context Assembler
    default_token_budget: int = 3000
    prompt_overhead_tokens: int = 250
    per_chunk_overhead_tokens: int = 12
    max_chunk_tokens: int = 1024
    assembly_strategy: str = "greedy"  # greedy | balanced | quality
    max_chunks: int = 10
    min_chunk_score: float = 0.0
    quality_threshold: float = 0.7

    # Generation
    generation_max_tokens: int = 1000
    generation_temperature: float = 0.3
    min_response_chars: int = 20
    trivial_query_words: int = 3

    # Fallback / retry
    provider_cooldown_seconds: float = 300.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0

    # Deadlines (fractions of what is left when the stage starts)
    query_deadline_seconds: float = 30.0
    search_deadline_fraction: float = 0.3
    rerank_deadline_fraction: float = 0.25

    # Citations / policy
    citation_style: str = "inline"  # inline | footnote | end | none
    synthesize_citations: bool = True
    require_approval: bool = False

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def tier_for(self, complexity: str) -> Tuple[str, ...]:
        if complexity == "simple":
            return self.tier_simple
        if complexity == "medium":
            return self.tier_medium
        return self.tier_complex

    def profiles_for(self, capability: str) -> Tuple[ProviderProfile, ...]:
        return tuple(p for p in self.profiles if p.supports(capability))

    def find_profile(
        self, model_id: str, provider_id: Optional[str] = None
    ) -> Optional[ProviderProfile]:
        for profile in self.profiles:
            if profile.model_id != model_id:
                continue
            if provider_id and profile.provider_id != provider_id:
                continue
            return profile
        return None

    def embedding_profiles(self) -> Tuple[ProviderProfile, ...]:
        """Embedding-capable profiles of the current model version only."""
        return tuple(
            p
            for p in self.profiles_for("embeddings")
            if p.model_id == self.embedding_model_version
        )

    def normalized_weights(self) -> Tuple[float, float]:
        total = self.semantic_weight + self.lexical_weight
        if total <= 0:
            return 0.5, 0.5
        return self.semantic_weight / total, self.lexical_weight / total
