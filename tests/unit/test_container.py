"""
Name: Composition Root Tests

Responsibilities:
  - Settings -> EngineConfig (profiles, tiers, embedding version)
  - PROVIDER_PROFILES_JSON parsing and validation
  - Lazy singletons and reset
"""

import json

import pytest

from rag_engine import container
from rag_engine.application.approval import AutoApproveGate, ReviewQueueGate
from rag_engine.crosscutting.config import Settings
from rag_engine.crosscutting.exceptions import ConfigurationError
from rag_engine.domain.entities import ProviderKind
from rag_engine.infrastructure.store.in_memory import InMemoryChunkStore

pytestmark = pytest.mark.unit


def _settings(**overrides) -> Settings:
    values = {"fake_providers": True}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestBuildEngineConfig:
    def test_fake_only_uses_fake_tiers(self):
        config = container.build_engine_config(_settings())

        assert {p.kind for p in config.profiles} == {ProviderKind.FAKE}
        assert config.tier_simple == ("fake-chat",)
        assert config.embedding_model_version == "fake-embedding-v1"

    def test_real_provider_uses_default_tiers(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        config = container.build_engine_config(_settings(openai_api_key="sk-test"))

        assert "gpt-4o-mini" in config.tier_simple
        assert config.embedding_model_version == "text-embedding-3-small"

    def test_explicit_tiers_and_indicators(self):
        config = container.build_engine_config(
            _settings(tier_simple="fake-chat", complex_indicators="summarize, contrast")
        )

        assert config.tier_simple == ("fake-chat",)
        assert config.complex_indicators == ("summarize", "contrast")

    def test_profiles_json(self):
        raw = json.dumps(
            [
                {"provider_id": "local", "kind": "self_hosted", "model_id": "llama3",
                 "capabilities": ["chat", "rerank"], "cost_per_1k_input": 0.0},
                {"provider_id": "local", "kind": "self_hosted", "model_id": "nomic",
                 "capabilities": ["embeddings"], "embedding_dimension": 768},
            ]
        )

        config = container.build_engine_config(
            _settings(fake_providers=False, provider_profiles_json=raw)
        )

        assert [p.model_id for p in config.profiles] == ["llama3", "nomic"]
        assert config.embedding_model_version == "nomic"
        assert config.profiles[0].timeout_seconds == 10.0

    def test_invalid_profiles_json(self):
        with pytest.raises(ConfigurationError):
            container.build_engine_config(
                _settings(provider_profiles_json='[{"provider_id": "x"}]')
            )

    def test_no_chat_profile(self):
        raw = json.dumps(
            [{"provider_id": "e", "kind": "fake", "model_id": "emb", "capabilities": ["embeddings"]}]
        )

        with pytest.raises(ConfigurationError, match="chat-capable"):
            container.build_engine_config(_settings(provider_profiles_json=raw))

    def test_no_embedding_profile(self):
        raw = json.dumps([{"provider_id": "c", "kind": "fake", "model_id": "chat"}])

        with pytest.raises(ConfigurationError, match="embedding-capable"):
            container.build_engine_config(_settings(provider_profiles_json=raw))


class TestSingletons:
    def test_orchestrator_is_cached_until_reset(self):
        first = container.get_orchestrator()

        assert container.get_orchestrator() is first
        container.reset_container()
        assert container.get_orchestrator() is not first

    def test_memory_store_by_default(self):
        assert isinstance(container.get_chunk_store(), InMemoryChunkStore)

    def test_approval_gate_follows_settings(self, monkeypatch):
        assert isinstance(container.get_approval_gate(), AutoApproveGate)

        monkeypatch.setenv("REQUIRE_APPROVAL", "1")
        container.get_settings.cache_clear()
        container.reset_container()

        assert isinstance(container.get_approval_gate(), ReviewQueueGate)

    def test_fake_provider_client_is_built(self):
        assert list(container.get_provider_clients()) == ["fake"]
