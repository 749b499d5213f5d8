"""
Name: Model Router Tests

Responsibilities:
  - Complexity heuristic (words + indicators + question mark)
  - Tier pick by cost preference and nearest-first fallback order
  - Forced provider / model, capability filtering, embedding version lock
  - Cost estimate split
"""

import pytest

from factories import chat_profile, embedding_profile, fake_engine_config
from rag_engine.application.model_router import ModelRouter
from rag_engine.crosscutting.exceptions import ConfigurationError
from rag_engine.domain.entities import RequestKind

pytestmark = pytest.mark.unit

CHEAP = chat_profile("openai", "mini", cost_in=0.0001, cost_out=0.0002)
MID = chat_profile("anthropic", "haiku", cost_in=0.0008, cost_out=0.004)
TOP = chat_profile("openai", "large", cost_in=0.005, cost_out=0.015)
SPARE = chat_profile("google", "flash", cost_in=0.0002, cost_out=0.0006)


def _router(**overrides) -> ModelRouter:
    values = dict(
        profiles=(CHEAP, MID, TOP, SPARE, embedding_profile()),
        tier_simple=("mini", "haiku", "large"),
        tier_medium=("haiku", "large"),
        tier_complex=("large",),
    )
    values.update(overrides)
    return ModelRouter(fake_engine_config(**values))


class TestComplexity:
    @pytest.mark.parametrize(
        "query,expected",
        [
            ("store opening hours", "simple"),
            ("what are the opening hours?", "medium"),
            ("explain the return process", "complex"),
            ("compare express and standard shipping", "complex"),
            (" ".join(["word"] * 120), "medium"),
            (" ".join(["word"] * 250), "complex"),
        ],
    )
    def test_estimate_complexity(self, query, expected):
        assert _router().estimate_complexity(query) == expected

    def test_indicator_matches_whole_words_only(self):
        """R: 'whyever' does not contain the indicator 'why' as a word."""
        assert _router().estimate_complexity("whyever not") == "simple"


class TestRoute:
    def test_cost_preference_picks_first_in_tier(self):
        decision = _router().route(RequestKind.ANSWER, "simple", "cost")

        assert decision.profile == CHEAP
        assert decision.ordered[:3] == [CHEAP, MID, TOP]

    def test_quality_preference_picks_last_in_tier(self):
        decision = _router().route(RequestKind.ANSWER, "simple", "quality")

        assert decision.profile == TOP
        assert decision.ordered[1] == MID

    def test_balanced_picks_middle_then_nearest(self):
        decision = _router().route(RequestKind.ANSWER, "simple", "balanced")

        assert decision.profile == MID
        assert decision.ordered[:3] == [MID, CHEAP, TOP]

    def test_out_of_tier_candidates_follow_by_cost(self):
        decision = _router().route(RequestKind.ANSWER, "complex", "cost")

        assert decision.ordered == [TOP, CHEAP, SPARE, MID]

    def test_hint_overrides_heuristic(self):
        decision = _router().route(
            RequestKind.ANSWER, "complex", "cost", query_text="hours"
        )
        assert decision.complexity == "complex"

    def test_missing_hint_uses_heuristic(self):
        decision = _router().route(
            RequestKind.ANSWER, None, "cost", query_text="explain returns"
        )
        assert decision.complexity == "complex"

    def test_forced_model_goes_first(self):
        decision = _router(forced_model="flash").route(RequestKind.ANSWER, "simple", "cost")

        assert decision.profile == SPARE
        assert decision.reason == "forced"
        assert SPARE not in decision.fallbacks

    def test_unknown_forced_model_is_ignored(self):
        decision = _router(forced_model="nope").route(RequestKind.ANSWER, "simple", "cost")

        assert decision.profile == CHEAP

    def test_unknown_tier_entries_are_skipped(self):
        decision = _router(tier_simple=("ghost", "haiku")).route(
            RequestKind.ANSWER, "simple", "cost"
        )
        assert decision.profile == MID

    def test_empty_tier_falls_back_to_cost_order(self):
        decision = _router(tier_simple=()).route(RequestKind.ANSWER, "simple", "cost")

        assert decision.profile == CHEAP
        assert decision.reason == "no_tier_configured"

    def test_invalid_cost_preference(self):
        with pytest.raises(ValueError):
            _router().route(RequestKind.ANSWER, "simple", "cheapest")

    def test_no_capable_profile(self):
        router = ModelRouter(fake_engine_config(profiles=(embedding_profile(),)))

        with pytest.raises(ConfigurationError):
            router.route(RequestKind.ANSWER, "simple", "cost")

    def test_embedding_never_routes_to_chat_profiles(self):
        decision = _router().route(RequestKind.EMBEDDING, None, "quality")

        assert decision.profile.model_id == "fake-embedding-v1"
        assert decision.fallbacks == ()

    def test_embedding_other_version_is_excluded(self):
        router = _router(
            profiles=(CHEAP, embedding_profile(model_id="other-v2")),
        )

        with pytest.raises(ConfigurationError):
            router.route(RequestKind.EMBEDDING)

    def test_select_model_returns_primary(self):
        assert _router().select_model(RequestKind.RERANK, "simple", "cost") == CHEAP


def test_estimate_cost_splits_input_and_output():
    profile = chat_profile("p", "m", cost_in=1.0, cost_out=2.0)

    # 1000 tokens -> 700 in * 1.0/1k + 300 out * 2.0/1k
    assert ModelRouter.estimate_cost(profile, 1000) == pytest.approx(1.3)
