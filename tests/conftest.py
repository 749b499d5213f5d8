"""
Name: Pytest Configuration and Shared Fixtures

Responsibilities:
  - Configure a deterministic test environment (fake providers, memory store)
  - Provide a seeded in-memory store and an orchestrator wired to fakes
  - Reset container singletons between tests

Collaborators:
  - pytest / pytest-asyncio
  - tests/factories.py: builders
  - rag_engine.infrastructure: InMemoryChunkStore, FakeProviderClient

Notes:
  - Env vars are set BEFORE importing rag_engine: schemas read settings at
    import time.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ["FAKE_PROVIDERS"] = "1"
os.environ["CHUNK_STORE"] = "memory"
os.environ["REDIS_URL"] = ""
os.environ["LOG_JSON"] = "0"
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Real provider credentials from the developer shell never reach a test.
for _name in (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "SELF_HOSTED_BASE_URL",
    "SELF_HOSTED_API_KEY",
    "PROVIDER_PROFILES_JSON",
):
    os.environ.pop(_name, None)

from typing import List, Optional  # noqa: E402

import pytest  # noqa: E402

from rag_engine.crosscutting import config as app_config  # noqa: E402

app_config.Settings.model_config["env_file"] = None

from factories import EMBEDDING_VERSION, fake_engine_config, make_chunk, no_sleep  # noqa: E402
from rag_engine.application.cost_tracker import CostTracker, InMemoryCostSink  # noqa: E402
from rag_engine.application.fallback_chain import CooldownRegistry, FallbackChain  # noqa: E402
from rag_engine.application.orchestrator import RagOrchestrator  # noqa: E402
from rag_engine.container import reset_container  # noqa: E402
from rag_engine.domain.engine_config import EngineConfig  # noqa: E402
from rag_engine.domain.entities import Chunk, Embedding  # noqa: E402
from rag_engine.infrastructure.analytics import (  # noqa: E402
    InMemoryAnalyticsSink,
    QueueAnalyticsEmitter,
)
from rag_engine.infrastructure.prompts.loader import PromptLoader  # noqa: E402
from rag_engine.infrastructure.providers.fake import (  # noqa: E402
    FakeProviderClient,
    hashed_embedding,
)
from rag_engine.infrastructure.store.in_memory import InMemoryChunkStore  # noqa: E402
from rag_engine.infrastructure.tokenizers import ConservativeTokenCounter  # noqa: E402


def pytest_configure(config) -> None:
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )


@pytest.fixture(autouse=True)
def _isolated_container():
    reset_container()
    app_config.get_settings.cache_clear()
    yield
    reset_container()
    app_config.get_settings.cache_clear()


# ============================================================================
# Store fixtures
# ============================================================================


@pytest.fixture
def store() -> InMemoryChunkStore:
    """R: Empty in-memory store with the production token limit."""
    return InMemoryChunkStore(max_chunk_tokens=1024, token_counter=ConservativeTokenCounter())


@pytest.fixture
def corpus() -> List[Chunk]:
    """R: Small website corpus (shipping, returns, opening hours)."""
    return [
        make_chunk(
            "Standard shipping takes three to five business days. Express shipping "
            "arrives the next business day.",
            chunk_id="ship-1",
            document_id="shipping",
            title="Shipping policy",
        ),
        make_chunk(
            "Returns are accepted within thirty days of delivery. Items must be "
            "unused and in the original packaging.",
            chunk_id="ret-1",
            document_id="returns",
            title="Returns policy",
        ),
        make_chunk(
            "Our store opens at nine in the morning and closes at six in the "
            "evening from Monday to Saturday.",
            chunk_id="hours-1",
            document_id="hours",
            title="Opening hours",
        ),
    ]


@pytest.fixture
def seeded_store(store: InMemoryChunkStore, corpus: List[Chunk]) -> InMemoryChunkStore:
    """R: Store holding the corpus, embedded with the current model version."""
    for chunk in corpus:
        result = store.upsert(chunk)
        store.set_embedding(
            result.chunk_id,
            Embedding(vector=tuple(hashed_embedding(chunk.text)), model_version=EMBEDDING_VERSION),
        )
    return store


# ============================================================================
# Provider / orchestrator fixtures
# ============================================================================


@pytest.fixture
def fake_client() -> FakeProviderClient:
    return FakeProviderClient(provider_id="fake")


@pytest.fixture
def cost_sink() -> InMemoryCostSink:
    return InMemoryCostSink()


@pytest.fixture
def analytics_sink() -> InMemoryAnalyticsSink:
    return InMemoryAnalyticsSink()


@pytest.fixture
def build_orchestrator(fake_client, cost_sink, analytics_sink):
    """
    R: Factory for an orchestrator over fakes.

    `clients` (provider_id -> client) replaces the default fake to script
    provider failures.
    """

    def _build(
        store,
        config: Optional[EngineConfig] = None,
        *,
        clients=None,
        **kwargs,
    ) -> RagOrchestrator:
        config = config or fake_engine_config()
        tracker = CostTracker(cost_sink, profile_lookup=config.find_profile)
        chain = FallbackChain(
            clients if clients is not None else {"fake": fake_client},
            cost_tracker=tracker,
            cooldowns=CooldownRegistry(period_seconds=config.provider_cooldown_seconds),
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_seconds,
            max_delay=1.0,
            sleep=no_sleep,
        )
        kwargs.setdefault("analytics", QueueAnalyticsEmitter(analytics_sink))
        return RagOrchestrator(
            config,
            store=store,
            chain=chain,
            prompts=PromptLoader(),
            token_counter_for=lambda _profile: ConservativeTokenCounter(),
            cost_tracker=tracker,
            **kwargs,
        )

    return _build
