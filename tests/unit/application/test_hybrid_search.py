"""
Name: Hybrid Search Tests

Responsibilities:
  - Weighted and RRF fusion of semantic + lexical streams
  - Degradation when one branch fails; propagation when both do
  - Threshold, top-K and deterministic tie-breaking

Notes:
  - Store and embedding service are mocks (unittest.mock); one test runs
    against the seeded in-memory store with the fake provider.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from factories import EMBEDDING_VERSION, fake_engine_config, make_chunk, no_sleep
from rag_engine.application.embedding_service import EmbeddingService
from rag_engine.application.fallback_chain import FallbackChain
from rag_engine.application.hybrid_search import HybridSearchService, min_max_normalize
from rag_engine.crosscutting.exceptions import EmbeddingFailed, StoreUnavailable
from rag_engine.domain.entities import Embedding

pytestmark = pytest.mark.unit

A = make_chunk("alpha text", chunk_id="A")
B = make_chunk("beta text", chunk_id="B")
C = make_chunk("gamma text", chunk_id="C")


def _embeddings(error=None) -> AsyncMock:
    service = AsyncMock()
    if error is not None:
        service.embed.side_effect = error
    else:
        service.embed.return_value = Embedding(vector=(1.0, 0.0), model_version=EMBEDDING_VERSION)
    return service


def _store(semantic=(), lexical=(), *, semantic_error=None, lexical_error=None) -> MagicMock:
    store = MagicMock()
    if semantic_error is not None:
        store.search_by_vector.side_effect = semantic_error
    else:
        store.search_by_vector.return_value = list(semantic)
    if lexical_error is not None:
        store.search_by_keyword.side_effect = lexical_error
    else:
        store.search_by_keyword.return_value = list(lexical)
    return store


SEMANTIC = [(A, 0.9), (B, 0.5)]
LEXICAL = [(B, 0.8), (C, 0.2)]


@pytest.mark.asyncio
async def test_weighted_fusion_normalizes_each_stream():
    service = HybridSearchService(_store(SEMANTIC, LEXICAL), _embeddings(), fake_engine_config())

    results = await service.search("query text", top_k=10)

    assert [r.chunk_id for r in results] == ["A", "B", "C"]
    by_id = {r.chunk_id: r for r in results}
    assert by_id["A"].combined_score == pytest.approx(0.7)
    assert by_id["B"].combined_score == pytest.approx(0.3)
    assert by_id["B"].semantic_score == 0.0
    assert by_id["B"].lexical_score == 1.0


@pytest.mark.asyncio
async def test_rrf_fusion_rewards_presence_in_both_streams():
    config = fake_engine_config(combine_mode="rrf", rrf_k=60)
    service = HybridSearchService(_store(SEMANTIC, LEXICAL), _embeddings(), config)

    results = await service.search("query text", top_k=10)

    assert [r.chunk_id for r in results] == ["B", "A", "C"]
    assert results[0].combined_score == pytest.approx(1 / 62 + 1 / 61)


@pytest.mark.asyncio
async def test_embedding_failure_degrades_to_lexical_only():
    service = HybridSearchService(
        _store(SEMANTIC, LEXICAL),
        _embeddings(EmbeddingFailed("all embedding providers failed")),
        fake_engine_config(),
    )

    outcome = await service.search_detailed("query text", top_k=10)

    assert outcome.degraded == ["semantic"]
    assert [c.chunk_id for c in outcome.candidates] == ["B", "C"]
    assert outcome.candidates[0].combined_score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_lexical_failure_degrades_to_semantic_only():
    store = _store(SEMANTIC, lexical_error=StoreUnavailable("keyword index down"))
    service = HybridSearchService(store, _embeddings(), fake_engine_config())

    outcome = await service.search_detailed("query text", top_k=10)

    assert outcome.degraded == ["lexical"]
    assert [c.chunk_id for c in outcome.candidates] == ["A", "B"]


@pytest.mark.asyncio
async def test_both_branches_down_prefers_store_unavailable():
    store = _store(lexical_error=StoreUnavailable("db down"))
    service = HybridSearchService(
        store, _embeddings(EmbeddingFailed("no embeddings")), fake_engine_config()
    )

    with pytest.raises(StoreUnavailable):
        await service.search("query text")


@pytest.mark.asyncio
async def test_unexpected_error_propagates():
    store = _store(SEMANTIC, lexical_error=RuntimeError("bug"))
    service = HybridSearchService(store, _embeddings(), fake_engine_config())

    with pytest.raises(RuntimeError):
        await service.search("query text")


@pytest.mark.asyncio
async def test_fetches_candidate_multiplier_times_k():
    store = _store(SEMANTIC, LEXICAL)
    service = HybridSearchService(
        store, _embeddings(), fake_engine_config(candidate_multiplier=3)
    )

    results = await service.search("query text", top_k=1)

    assert len(results) == 1
    assert store.search_by_vector.call_args.args[2] == 3
    assert store.search_by_keyword.call_args.args[1] == 3


@pytest.mark.asyncio
async def test_threshold_filters_low_scores():
    config = fake_engine_config(min_combined_score=0.5)
    service = HybridSearchService(_store(SEMANTIC, LEXICAL), _embeddings(), config)

    results = await service.search("query text", top_k=10)

    assert [r.chunk_id for r in results] == ["A"]


@pytest.mark.asyncio
async def test_ties_broken_by_chunk_id():
    store = _store([(C, 0.5), (A, 0.5)], [])
    service = HybridSearchService(store, _embeddings(), fake_engine_config())

    results = await service.search("query text", top_k=10)

    assert [r.chunk_id for r in results] == ["A", "C"]


@pytest.mark.asyncio
async def test_blank_query_returns_nothing_without_calls():
    store = _store(SEMANTIC, LEXICAL)
    embeddings = _embeddings()
    service = HybridSearchService(store, embeddings, fake_engine_config())

    assert await service.search("   ") == []
    embeddings.embed.assert_not_called()
    store.search_by_keyword.assert_not_called()


def test_min_max_normalize_constant_stream_maps_to_one():
    assert min_max_normalize([(A, 0.3), (B, 0.3)]) == {"A": 1.0, "B": 1.0}
    assert min_max_normalize([]) == {}


@pytest.mark.asyncio
async def test_end_to_end_on_seeded_store(seeded_store, fake_client):
    config = fake_engine_config()
    chain = FallbackChain({"fake": fake_client}, max_attempts=1, base_delay=0.0, sleep=no_sleep)
    service = HybridSearchService(seeded_store, EmbeddingService(chain, config), config)

    results = await service.search("express shipping next business day", top_k=2)

    assert results[0].chunk_id == "ship-1"
    assert len(results) <= 2
