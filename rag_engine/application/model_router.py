"""
===============================================================================
CRC CARD: application/model_router.py
===============================================================================

Class:
    ModelRouter

Responsibilities:
    - Estimate query complexity (simple / medium / complex) with a word-count
      and indicator heuristic, unless the caller supplies a hint.
    - Pick a provider profile from the tier of that complexity according to
      the cost preference (cost -> first, balanced -> middle, quality -> last).
    - Produce the full ordered fallback list handed to the FallbackChain.
    - Estimate the cost of a call (70% input / 30% output split).

Collaborators:
    - domain.engine_config.EngineConfig (profiles, tiers, thresholds)
    - domain.entities.ProviderProfile / RequestKind

Constraints:
    - Pure and deterministic: same inputs + same config -> same decision.
    - Profiles lacking the capability a request needs are never returned.
===============================================================================
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, List, Optional, Sequence, Tuple

from ..crosscutting.exceptions import ConfigurationError
from ..crosscutting.logger import logger
from ..domain.engine_config import COMPLEXITY_LEVELS, COST_PREFERENCES, EngineConfig
from ..domain.entities import (
    CAPABILITY_CHAT,
    CAPABILITY_EMBEDDINGS,
    ProviderProfile,
    RequestKind,
)

_INPUT_SHARE: Final[float] = 0.7
_OUTPUT_SHARE: Final[float] = 0.3


@dataclass(frozen=True)
class RouteDecision:
    """Primary profile plus the ordered fallbacks behind it."""

    profile: ProviderProfile
    fallbacks: Tuple[ProviderProfile, ...]
    complexity: str
    cost_preference: str
    reason: str

    @property
    def ordered(self) -> List[ProviderProfile]:
        return [self.profile, *self.fallbacks]


def capability_for(request_kind: RequestKind) -> str:
    if request_kind == RequestKind.EMBEDDING:
        return CAPABILITY_EMBEDDINGS
    return CAPABILITY_CHAT


def _indicator_pattern(indicator: str) -> re.Pattern:
    return re.compile(r"\b" + r"\s+".join(map(re.escape, indicator.split())) + r"\b")


class ModelRouter:
    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._indicators = [
            _indicator_pattern(i.lower()) for i in config.complex_indicators if i.strip()
        ]

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Complexity
    # ------------------------------------------------------------------
    def estimate_complexity(self, query_text: str) -> str:
        text = (query_text or "").lower()
        words = len(text.split())
        has_indicator = any(p.search(text) for p in self._indicators)

        if words <= self._config.simple_max_words and not has_indicator and "?" not in text:
            return "simple"
        if words <= self._config.medium_max_words and not has_indicator:
            return "medium"
        return "complex"

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def select_model(
        self,
        request_kind: RequestKind,
        complexity_hint: Optional[str] = None,
        cost_preference: str = "balanced",
        *,
        query_text: str = "",
    ) -> ProviderProfile:
        """R: Primary profile for the request (see route() for fallbacks)."""
        return self.route(
            request_kind, complexity_hint, cost_preference, query_text=query_text
        ).profile

    def route(
        self,
        request_kind: RequestKind,
        complexity_hint: Optional[str] = None,
        cost_preference: str = "balanced",
        *,
        query_text: str = "",
    ) -> RouteDecision:
        preference = (cost_preference or "balanced").strip().lower()
        if preference not in COST_PREFERENCES:
            raise ValueError(f"cost_preference must be one of {COST_PREFERENCES}")

        if request_kind == RequestKind.EMBEDDING:
            return self._route_embedding(preference)

        complexity = (complexity_hint or "").strip().lower()
        if complexity not in COMPLEXITY_LEVELS:
            complexity = self.estimate_complexity(query_text)

        capability = capability_for(request_kind)
        candidates = self._config.profiles_for(capability)
        if not candidates:
            raise ConfigurationError(f"No provider profile supports '{capability}'")

        tier = self._resolve_tier(self._config.tier_for(complexity), capability)
        reason = "tier"
        if not tier:
            tier = self._by_cost(candidates, descending=preference == "quality")
            reason = "no_tier_configured"

        chosen_idx = self._pick_index(len(tier), preference)
        ordered = self._tier_order(tier, chosen_idx, preference)
        ordered += self._by_cost(
            [p for p in candidates if p not in ordered],
            descending=preference == "quality",
        )

        forced = self._forced_profile(capability)
        if forced is not None:
            ordered = [forced, *[p for p in ordered if p != forced]]
            reason = "forced"

        decision = RouteDecision(
            profile=ordered[0],
            fallbacks=tuple(ordered[1:]),
            complexity=complexity,
            cost_preference=preference,
            reason=reason,
        )
        logger.debug(
            "Model routed",
            extra={
                "request_kind": request_kind.value,
                "complexity": complexity,
                "cost_preference": preference,
                "provider": decision.profile.provider_id,
                "model": decision.profile.model_id,
                "reason": reason,
                "fallbacks": len(decision.fallbacks),
            },
        )
        return decision

    def _route_embedding(self, preference: str) -> RouteDecision:
        # Cross-version fallback would mix vector spaces: same model version only.
        profiles = list(self._config.embedding_profiles())
        if not profiles:
            raise ConfigurationError(
                "No embedding provider for model version "
                f"'{self._config.embedding_model_version}'"
            )
        return RouteDecision(
            profile=profiles[0],
            fallbacks=tuple(profiles[1:]),
            complexity="simple",
            cost_preference=preference,
            reason="embedding_model_version",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_tier(self, entries: Sequence[str], capability: str) -> List[ProviderProfile]:
        """R: Tier entries are 'model' or 'provider:model'; unknown ones are skipped."""
        resolved: List[ProviderProfile] = []
        for entry in entries:
            profile = self._config.find_profile(entry)
            if profile is None and ":" in entry:
                provider_id, _, model_id = entry.partition(":")
                profile = self._config.find_profile(model_id, provider_id)
            if profile is None or not profile.supports(capability):
                logger.debug("Tier entry skipped", extra={"entry": entry})
                continue
            if profile not in resolved:
                resolved.append(profile)
        return resolved

    def _forced_profile(self, capability: str) -> Optional[ProviderProfile]:
        if not self._config.forced_model and not self._config.forced_provider:
            return None
        for profile in self._config.profiles_for(capability):
            if self._config.forced_model and profile.model_id != self._config.forced_model:
                continue
            if (
                self._config.forced_provider
                and profile.provider_id != self._config.forced_provider
            ):
                continue
            return profile
        logger.warning(
            "Forced provider/model not available, routing normally",
            extra={
                "forced_provider": self._config.forced_provider,
                "forced_model": self._config.forced_model,
            },
        )
        return None

    @staticmethod
    def _pick_index(size: int, preference: str) -> int:
        if preference == "cost":
            return 0
        if preference == "quality":
            return size - 1
        return (size - 1) // 2

    @staticmethod
    def _tier_order(
        tier: List[ProviderProfile], chosen: int, preference: str
    ) -> List[ProviderProfile]:
        """R: Chosen first, then the rest of the tier nearest-first."""
        # Ties between equally distant neighbours lean cheaper unless quality.
        lean = 1 if preference == "quality" else -1
        rest = sorted(
            (i for i in range(len(tier)) if i != chosen),
            key=lambda i: (abs(i - chosen), lean * -i),
        )
        return [tier[chosen], *[tier[i] for i in rest]]

    @staticmethod
    def _by_cost(
        profiles: Sequence[ProviderProfile], *, descending: bool
    ) -> List[ProviderProfile]:
        def blended(p: ProviderProfile) -> float:
            return p.cost_per_1k_input * _INPUT_SHARE + p.cost_per_1k_output * _OUTPUT_SHARE

        ordered = sorted(profiles, key=lambda p: p.key)
        return sorted(ordered, key=blended, reverse=descending)

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------
    @staticmethod
    def estimate_cost(profile: ProviderProfile, tokens: int) -> float:
        tokens_in = tokens * _INPUT_SHARE
        tokens_out = tokens * _OUTPUT_SHARE
        return round(
            (tokens_in / 1000.0) * profile.cost_per_1k_input
            + (tokens_out / 1000.0) * profile.cost_per_1k_output,
            6,
        )
