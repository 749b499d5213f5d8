"""
Name: Domain Tests (entities, engine config, keywords, freshness)

Responsibilities:
  - Content hashing is whitespace-insensitive
  - Chunk defaults (hash, document ids) and per-version embeddings
  - EngineConfig lookups and weight normalization
  - Keyword extraction and lexical scoring bounds
  - Freshness report buckets and stale list
"""

from dataclasses import FrozenInstanceError, replace
from datetime import datetime, timedelta, timezone

import pytest

from factories import chat_profile, embedding_profile, fake_engine_config, make_candidate, make_chunk
from rag_engine.crosscutting.exceptions import QueryTimeout, StoreUnavailable
from rag_engine.domain.entities import (
    AnswerResult,
    Citation,
    Embedding,
    QueryState,
    compute_content_hash,
    normalize_text,
)
from rag_engine.domain.keywords import extract_keywords, keyword_score
from rag_engine.infrastructure.store.freshness import SourceFreshness, build_freshness_report

pytestmark = pytest.mark.unit


class TestEntities:
    def test_hash_ignores_whitespace_runs(self):
        assert normalize_text("  a \n\t b ") == "a b"
        assert compute_content_hash("a  b") == compute_content_hash("a b\n")

    def test_chunk_defaults(self):
        chunk = make_chunk("Shipping takes five days.", document_id="shipping")

        assert chunk.content_hash == compute_content_hash("Shipping takes five days.")
        assert chunk.document_ids == ("shipping",)
        assert not chunk.is_tombstoned
        assert chunk.embedding_for("v1") is None

    def test_embedding_dimension(self):
        assert Embedding(vector=(0.1, 0.2, 0.3), model_version="v1").dimension == 3

    def test_candidate_score_prefers_rerank(self):
        chunk = make_chunk("x")

        assert make_candidate(chunk, 0.4).score == 0.4
        assert make_candidate(chunk, 0.4, rerank=0.9).score == 0.9

    def test_terminal_states(self):
        assert QueryState.COMPLETED.is_terminal
        assert QueryState.FAILED.is_terminal
        assert QueryState.NO_GROUNDING_AVAILABLE.is_terminal
        assert not QueryState.GENERATING.is_terminal

    def test_answer_result_error_code(self):
        result = AnswerResult(
            query_id="q", conversation_id="c", text="", state=QueryState.FAILED,
            error=QueryTimeout("too slow"),
        )

        assert result.error_code == "QUERY_TIMEOUT"
        assert result.usage == {"tokens_in": 0, "tokens_out": 0}

    def test_citation_to_dict(self):
        citation = Citation(
            source_uri="https://x/a", chunk_id="c1", label="A", title="A", marker="[S1]"
        )

        assert citation.to_dict()["marker"] == "[S1]"

    def test_error_response_shape(self):
        response = StoreUnavailable("db down").to_response()

        assert response.error_code == "STORE_UNAVAILABLE"
        assert response.message == "db down"
        assert response.error_id


class TestEngineConfig:
    def test_frozen_and_replace(self):
        config = fake_engine_config()

        with pytest.raises(FrozenInstanceError):
            config.semantic_weight = 1.0
        assert replace(config, semantic_weight=1.0).semantic_weight == 1.0

    def test_find_profile(self):
        config = fake_engine_config(
            profiles=(chat_profile("a", "m1"), chat_profile("b", "m1"), embedding_profile())
        )

        assert config.find_profile("m1").provider_id == "a"
        assert config.find_profile("m1", "b").provider_id == "b"
        assert config.find_profile("missing") is None

    def test_embedding_profiles_match_current_version(self):
        config = fake_engine_config(
            profiles=(embedding_profile(), embedding_profile(model_id="old-v0"))
        )

        assert [p.model_id for p in config.embedding_profiles()] == ["fake-embedding-v1"]

    def test_tier_lookup(self):
        config = fake_engine_config(tier_simple=("a",), tier_medium=("b",), tier_complex=("c",))

        assert config.tier_for("simple") == ("a",)
        assert config.tier_for("medium") == ("b",)
        assert config.tier_for("complex") == ("c",)

    def test_normalized_weights(self):
        config = fake_engine_config(semantic_weight=3.0, lexical_weight=1.0)

        assert config.normalized_weights() == (0.75, 0.25)


class TestKeywords:
    def test_extract_keywords(self):
        assert extract_keywords("What are the store's opening hours? Opening!") == [
            "store's",
            "opening",
            "hours",
        ]

    def test_only_stop_words(self):
        assert extract_keywords("what is the") == []

    def test_score_bounds(self):
        text = "Our store opening hours are nine to six."

        full = keyword_score(text, ["opening", "hours"])
        partial = keyword_score(text, ["opening", "refund"])

        assert 0.0 < partial < full <= 1.0
        assert keyword_score(text, ["refund"]) == 0.0
        assert keyword_score("", ["opening"]) == 0.0


class TestFreshnessReport:
    NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)

    def _source(self, uri: str, days: int) -> SourceFreshness:
        return SourceFreshness(
            source_uri=uri,
            source_type="page",
            last_indexed=self.NOW - timedelta(days=days),
            chunk_count=2,
        )

    def test_buckets_and_stale_list(self):
        report = build_freshness_report(
            [self._source("a", 3), self._source("b", 45), self._source("c", 200)],
            threshold_days=90,
            now=self.NOW,
        )

        assert report["total_sources"] == 3
        assert report["fresh_sources"] == 2
        assert report["stale_sources"] == 1
        assert report["by_age_range"]["0-7"] == 1
        assert report["by_age_range"]["31-90"] == 1
        assert report["by_age_range"]["181+"] == 1
        assert report["stale"][0]["source_uri"] == "c"
        assert report["oldest_content_days"] == 200
        assert report["newest_content_days"] == 3

    def test_empty(self):
        report = build_freshness_report([], threshold_days=30, now=self.NOW)

        assert report["total_sources"] == 0
        assert report["average_age_days"] == 0

    def test_naive_timestamps_are_utc(self):
        naive = SourceFreshness(
            source_uri="n", source_type="page",
            last_indexed=datetime(2026, 5, 31), chunk_count=1,
        )

        report = build_freshness_report([naive], threshold_days=30, now=self.NOW)

        assert report["newest_content_days"] == 1
