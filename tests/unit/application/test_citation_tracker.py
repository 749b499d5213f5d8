"""
Name: Citation Tracker Tests

Responsibilities:
  - Marker tagging in context order, escaping of marker-like source text
  - Integrity: markers outside the context are stripped and reported
  - Synthesized citations and answer formatting styles
  - Per-conversation stats
"""

import pytest

from factories import make_candidate, make_chunk
from rag_engine.application.citations import (
    CitationTracker,
    display_label,
    escape_markers,
)
from rag_engine.domain.entities import AssembledChunk, AssembledContext

pytestmark = pytest.mark.unit


def _context(*chunks) -> AssembledContext:
    items = tuple(AssembledChunk(candidate=make_candidate(c), tokens=10) for c in chunks)
    return AssembledContext(items=items, token_total=10 * len(items), token_budget=1000)


@pytest.fixture
def context():
    return _context(
        make_chunk("Shipping takes five days.", chunk_id="ship", document_id="shipping",
                   title="Shipping policy"),
        make_chunk("Returns accepted for 30 days.", chunk_id="ret", document_id="returns"),
    )


@pytest.fixture
def tracker():
    return CitationTracker()


class TestTagging:
    def test_markers_follow_context_order(self, tracker, context):
        tagged = tracker.tag(context)

        assert tagged.markers == ("[S1]", "[S2]")
        assert tagged.text.startswith(
            "[S1] Shipping policy | https://example.com/shipping\nShipping takes five days."
        )
        assert "[S2] example.com/returns | https://example.com/returns" in tagged.text

    def test_marker_like_text_in_sources_is_escaped(self, tracker):
        ctx = _context(make_chunk("See [S7] and [ s2 ] for details.", chunk_id="x"))

        tagged = tracker.tag(ctx)

        assert "[S7]" not in tagged.text
        assert "(S7)" in tagged.text
        assert "(s2)" in tagged.text


class TestValidation:
    def test_valid_markers_become_citations(self, tracker, context):
        result = tracker.validate("Five days [S1]. Thirty days [S2]. Again [S1].", context)

        assert [c.chunk_id for c in result.citations] == ["ship", "ret"]
        assert result.violations == []
        assert result.text == "Five days [S1]. Thirty days [S2]. Again [S1]."

    def test_out_of_context_marker_is_stripped_and_reported(self, tracker, context):
        """R: [S9] does not exist -> removed from the text, one violation."""
        result = tracker.validate("Five days [S1]. Made up [S9].", context)

        assert result.text == "Five days [S1]. Made up."
        assert [v.marker for v in result.violations] == ["[S9]"]
        assert {c.chunk_id for c in result.citations} <= context.chunk_ids

    def test_no_markers(self, tracker, context):
        result = tracker.validate("Plain answer.", context)

        assert not result.has_citations
        assert result.text == "Plain answer."

    def test_synthesize_covers_whole_context(self, tracker, context):
        citations = tracker.synthesize(context)

        assert [c.marker for c in citations] == ["[S1]", "[S2]"]
        assert citations[0].label == "Shipping policy"
        assert citations[1].source_uri == "https://example.com/returns"


class TestFormatting:
    @pytest.fixture
    def citations(self, tracker, context):
        return tracker.synthesize(context)

    def test_inline_leaves_text_unchanged(self, tracker, citations):
        assert tracker.format_answer("A [S1] B [S2].", citations, "inline") == "A [S1] B [S2]."

    def test_footnote_style(self, tracker, citations):
        out = tracker.format_answer("A [S1]. B [S2].", citations, "footnote")

        assert out.startswith("A [^1]. B [^2].")
        assert "[^1]: Shipping policy (https://example.com/shipping)" in out

    def test_end_style_lists_sources(self, tracker, citations):
        out = tracker.format_answer("A [S1]. B [S2].", citations, "end")

        assert out.startswith("A. B.")
        assert "Sources:\n1. Shipping policy - https://example.com/shipping" in out

    def test_none_style_strips_markers(self, tracker, citations):
        assert tracker.format_answer("A [S1].", citations, "none") == "A."

    def test_unknown_style(self, tracker, citations):
        with pytest.raises(ValueError):
            tracker.format_answer("A", citations, "mla")


class TestStats:
    def test_stats_per_conversation(self, tracker, context):
        citations = tracker.synthesize(context)
        tracker.record("conv", citations)
        tracker.record("conv", [])
        tracker.record("conv", citations[:1])

        stats = tracker.stats("conv")

        assert stats["total_messages"] == 3
        assert stats["messages_with_citations"] == 2
        assert stats["total_citations"] == 3
        assert stats["unique_sources_count"] == 2
        assert stats["avg_citations_per_message"] == 1.5

    def test_most_cited_sources(self, tracker, context):
        citations = tracker.synthesize(context)
        tracker.record("a", citations)
        tracker.record("b", citations[:1])

        top = tracker.most_cited_sources(limit=1)

        assert top == [
            {"source_uri": "https://example.com/shipping", "title": "Shipping policy", "count": 2}
        ]

    def test_unknown_conversation(self, tracker):
        assert tracker.stats("missing")["total_messages"] == 0

    def test_history_evicts_least_recently_updated_conversation(self, context):
        tracker = CitationTracker(max_conversations=2)
        citations = tracker.synthesize(context)
        tracker.record("a", citations)
        tracker.record("b", citations)
        tracker.record("a", citations)
        tracker.record("c", citations)

        assert tracker.stats("b")["total_messages"] == 0
        assert tracker.stats("a")["total_messages"] == 2
        assert tracker.stats("c")["total_messages"] == 1

    def test_history_keeps_last_messages_per_conversation(self, context):
        tracker = CitationTracker(max_messages=3)
        citations = tracker.synthesize(context)
        for _ in range(10):
            tracker.record("conv", citations)
        tracker.record("conv", [])

        stats = tracker.stats("conv")

        assert stats["total_messages"] == 3
        assert stats["messages_with_citations"] == 2

    def test_limits_must_be_positive(self):
        with pytest.raises(ValueError):
            CitationTracker(max_conversations=0)


def test_escape_markers_helper():
    assert escape_markers("see [S3]") == "see (S3)"


def test_display_label_fallbacks():
    assert display_label(make_chunk("t", title="Title")) == "Title"
    assert display_label(make_chunk("t", source_uri="https://shop.test/a/b")) == "shop.test/a/b"
    no_uri = make_chunk("t", document_id="doc-9")
    no_uri.source_uri = ""
    assert display_label(no_uri) == "doc-9"
