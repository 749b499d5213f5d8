"""
Name: In-Memory Chunk Store Tests

Responsibilities:
  - Idempotent upsert by content hash (unchanged / superseded / deduplicated)
  - Tombstones stay readable; searches skip them
  - Vector search restricted to one embedding model version
  - Keyword search ranking and freshness report

Notes:
  - Pure unit tests (no external dependencies)
"""

from datetime import datetime, timedelta, timezone

import pytest

from factories import EMBEDDING_VERSION, make_chunk
from rag_engine.domain.entities import Embedding
from rag_engine.infrastructure.providers.fake import hashed_embedding
from rag_engine.infrastructure.store.in_memory import InMemoryChunkStore
from rag_engine.infrastructure.tokenizers import ConservativeTokenCounter


def _embed(store, chunk_id: str, text: str, version: str = EMBEDDING_VERSION) -> None:
    store.set_embedding(
        chunk_id, Embedding(vector=tuple(hashed_embedding(text)), model_version=version)
    )


@pytest.mark.unit
class TestUpsert:
    def test_new_chunk_is_created(self, store):
        """R: First upsert of a slot creates version 1."""
        result = store.upsert(make_chunk("Shipping takes five days.", chunk_id="c1"))

        assert result.status == "created"
        assert result.chunk_id == "c1"
        stored = store.get("c1")
        assert stored.version == 1
        assert stored.token_count > 0

    def test_same_text_same_slot_is_noop(self, store):
        """R: Upserting identical text twice leaves exactly one chunk."""
        first = store.upsert(make_chunk("Shipping takes five days.", chunk_id="c1"))
        second = store.upsert(make_chunk("Shipping takes   five days. ", chunk_id="c2"))

        assert second.status == "unchanged"
        assert second.chunk_id == first.chunk_id
        assert len(store) == 1

    def test_changed_text_supersedes_and_tombstones(self, store):
        """R: New text at the same slot -> new version, prior one tombstoned but readable."""
        store.upsert(make_chunk("Shipping takes five days.", chunk_id="v1"))
        result = store.upsert(make_chunk("Shipping takes two days.", chunk_id="v2"))

        assert result.status == "superseded"
        assert result.tombstoned_chunk_id == "v1"
        assert store.get("v2").version == 2
        old = store.get("v1")
        assert old is not None
        assert old.is_tombstoned
        assert len(store) == 1

    def test_identical_text_across_documents_is_stored_once(self, store):
        """R: Cross-document duplicate text -> one chunk referenced by both documents."""
        store.upsert(make_chunk("Free returns for thirty days.", chunk_id="a", document_id="d1"))
        result = store.upsert(
            make_chunk("Free returns for thirty days.", chunk_id="b", document_id="d2")
        )

        assert result.status == "deduplicated"
        assert result.chunk_id == "a"
        assert store.get("b") is None
        assert set(store.get("a").document_ids) == {"d1", "d2"}
        assert len(store) == 1

    def test_empty_text_rejected(self, store):
        with pytest.raises(ValueError):
            store.upsert(make_chunk("   "))

    def test_chunk_over_token_limit_rejected(self):
        """R: max_chunk_tokens is enforced with the configured counter."""
        store = InMemoryChunkStore(max_chunk_tokens=10, token_counter=ConservativeTokenCounter())

        with pytest.raises(ValueError, match="max is 10"):
            store.upsert(make_chunk("x" * 100))

    def test_understated_token_count_does_not_bypass_limit(self, store):
        """R: A caller-declared count below the measured one is ignored."""
        with pytest.raises(ValueError, match="max is 1024"):
            store.upsert(make_chunk("word " * 4000, token_count=1))
        assert len(store) == 0

    def test_stored_token_count_is_never_below_measured(self, store):
        text = "Shipping takes three to five business days."
        store.upsert(make_chunk(text, chunk_id="c1", token_count=1))

        assert store.get("c1").token_count == ConservativeTokenCounter().count(text)

    def test_larger_declared_token_count_is_kept(self, store):
        store.upsert(make_chunk("Short text.", chunk_id="c1", token_count=50))

        assert store.get("c1").token_count == 50


@pytest.mark.unit
class TestTombstones:
    def test_mark_stale_tombstones_document_chunks(self, store):
        store.upsert(make_chunk("Chunk zero text here.", chunk_id="z", ordinal=0))
        store.upsert(make_chunk("Chunk one text here.", chunk_id="o", ordinal=1))

        assert store.mark_stale("doc-1") == 2
        assert len(store) == 0
        assert store.get("z").is_tombstoned

    def test_mark_stale_keeps_chunk_shared_with_other_document(self, store):
        """R: A deduplicated chunk survives while another document references it."""
        store.upsert(make_chunk("Shared paragraph text.", chunk_id="s", document_id="d1"))
        store.upsert(make_chunk("Shared paragraph text.", document_id="d2"))

        assert store.mark_stale("d1") == 0
        shared = store.get("s")
        assert not shared.is_tombstoned
        assert shared.document_ids == ("d2",)

    def test_mark_stale_unknown_document(self, store):
        assert store.mark_stale("missing") == 0

    def test_tombstoned_chunks_excluded_from_search(self, store):
        store.upsert(make_chunk("Warehouse shipping schedule.", chunk_id="w"))
        _embed(store, "w", "Warehouse shipping schedule.")
        store.mark_stale("doc-1")

        assert store.search_by_keyword("warehouse shipping", 5) == []
        assert store.search_by_vector(
            hashed_embedding("warehouse shipping"), EMBEDDING_VERSION, 5
        ) == []

    def test_bulk_get_returns_known_ids_in_order(self, store):
        store.upsert(make_chunk("First chunk text.", chunk_id="1", ordinal=0))
        store.upsert(make_chunk("Second chunk text.", chunk_id="2", ordinal=1))

        chunks = store.bulk_get(["2", "missing", "1"])

        assert [c.chunk_id for c in chunks] == ["2", "1"]


@pytest.mark.unit
class TestSearch:
    def test_vector_search_orders_by_similarity(self, seeded_store):
        query = hashed_embedding("store opens nine morning closes six evening")

        results = seeded_store.search_by_vector(query, EMBEDDING_VERSION, 3)

        assert results[0][0].chunk_id == "hours-1"
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)

    def test_vector_search_ignores_other_model_versions(self, seeded_store):
        """R: Vectors of a different model version are never compared."""
        results = seeded_store.search_by_vector(
            hashed_embedding("shipping"), "other-embedding-v2", 3
        )

        assert results == []

    def test_vector_search_skips_dimension_mismatch(self, store):
        store.upsert(make_chunk("Some text.", chunk_id="a"))
        store.set_embedding("a", Embedding(vector=(1.0, 0.0), model_version=EMBEDDING_VERSION))

        assert store.search_by_vector([1.0, 0.0, 0.0], EMBEDDING_VERSION, 3) == []

    def test_keyword_search_prefers_matching_chunk(self, seeded_store):
        results = seeded_store.search_by_keyword("returns accepted thirty days", 3)

        assert results[0][0].chunk_id == "ret-1"
        assert all(0.0 < score <= 1.0 for _, score in results)

    def test_keyword_search_stop_words_only(self, seeded_store):
        assert seeded_store.search_by_keyword("the and of", 3) == []

    def test_chunks_missing_embedding(self, store):
        store.upsert(make_chunk("Embedded text.", chunk_id="e", ordinal=0))
        store.upsert(make_chunk("Pending text.", chunk_id="p", ordinal=1))
        _embed(store, "e", "Embedded text.")

        missing = store.chunks_missing_embedding(EMBEDDING_VERSION, 10)

        assert [c.chunk_id for c in missing] == ["p"]

    def test_set_embedding_unknown_chunk(self, store):
        with pytest.raises(KeyError):
            store.set_embedding("nope", Embedding(vector=(1.0,), model_version=EMBEDDING_VERSION))


@pytest.mark.unit
def test_freshness_report_splits_fresh_and_stale():
    """R: Age is measured from the newest live chunk of each source."""
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    store = InMemoryChunkStore(clock=lambda: now)
    old = make_chunk("Old page text.", chunk_id="old", document_id="old-doc")
    old.freshness_at = now - timedelta(days=200)
    fresh = make_chunk("Fresh page text.", chunk_id="new", document_id="new-doc")
    fresh.freshness_at = now - timedelta(days=2)
    store.upsert(old)
    store.upsert(fresh)

    report = store.freshness_report(90, now=now)

    assert report["total_sources"] == 2
    assert report["stale_sources"] == 1
    assert report["fresh_sources"] == 1
    assert report["stale"][0]["source_uri"] == "https://example.com/old-doc"
    assert report["by_age_range"]["181+"] == 1
    assert report["by_age_range"]["0-7"] == 1
    assert report["oldest_content_days"] == 200
