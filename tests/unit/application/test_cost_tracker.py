"""
Name: Cost Tracker Tests

Responsibilities:
  - One priced entry per record() call, written off the caller's path
  - Profile lookup when the caller does not pass a profile
  - Aggregations by provider / model / conversation
  - Sink failures never reach the caller
  - Production sink forwards entries instead of keeping them
"""

import pytest

from factories import chat_profile, fake_engine_config
from rag_engine.application.cost_tracker import CostTracker, InMemoryCostSink, LoggingCostSink
from rag_engine.container import get_cost_sink
from rag_engine.crosscutting.metrics import get_metrics_response

pytestmark = pytest.mark.unit

PRICED = chat_profile("openai", "mini", cost_in=0.5, cost_out=1.5)


class _BrokenSink:
    def write(self, entry):
        raise RuntimeError("sink down")


@pytest.mark.asyncio
async def test_record_prices_entry_from_profile():
    sink = InMemoryCostSink()
    tracker = CostTracker(sink)

    tracker.record("openai", "mini", 2000, 1000, "conv-1", profile=PRICED)
    await tracker.flush()

    entry = sink.entries[0]
    assert entry.tokens_in == 2000
    assert entry.tokens_out == 1000
    assert entry.cost_usd == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_profile_lookup_used_when_missing():
    sink = InMemoryCostSink()
    config = fake_engine_config(profiles=(PRICED,))
    tracker = CostTracker(sink, profile_lookup=config.find_profile)

    tracker.record("openai", "mini", 1000, 0, "conv-1")
    await tracker.flush()

    assert sink.entries[0].cost_usd == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_unknown_model_costs_zero():
    sink = InMemoryCostSink()
    tracker = CostTracker(sink)

    tracker.record("local", "llama", 1000, 1000, "conv-1")
    await tracker.flush()

    assert sink.entries[0].cost_usd == 0.0


@pytest.mark.asyncio
async def test_totals_group_entries():
    sink = InMemoryCostSink()
    tracker = CostTracker(sink)
    tracker.record("openai", "mini", 1000, 0, "a", profile=PRICED)
    tracker.record("openai", "mini", 1000, 0, "b", profile=PRICED)
    tracker.record("google", "flash", 10, 10, "a")
    await tracker.flush()

    assert sink.totals_by_provider()["openai"]["calls"] == 2
    assert sink.totals_by_model()["google:flash"]["tokens_out"] == 10
    assert sink.totals_by_conversation()["a"]["calls"] == 2
    assert sink.total_cost() == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_sink_failure_is_swallowed_and_counted():
    tracker = CostTracker(_BrokenSink())

    tracker.record("openai", "mini", 1, 1, "conv-1")
    await tracker.flush()

    assert tracker.dropped == 1


@pytest.mark.asyncio
async def test_full_queue_drops_entry():
    sink = InMemoryCostSink()
    tracker = CostTracker(sink, maxsize=1)

    tracker.record("openai", "mini", 1, 1, "c")
    tracker.record("openai", "mini", 1, 1, "c")
    await tracker.flush()

    assert tracker.dropped == 1
    assert len(sink.entries) == 1


@pytest.mark.asyncio
async def test_logging_sink_forwards_without_keeping(caplog):
    sink = LoggingCostSink()
    tracker = CostTracker(sink)

    with caplog.at_level("INFO", logger="rag-engine"):
        tracker.record("openai", "ledger-mini", 1000, 1000, "conv-9", profile=PRICED)
        await tracker.flush()

    record = next(r for r in caplog.records if r.getMessage() == "Provider cost")
    assert record.cost_usd == pytest.approx(2.0)
    assert record.cost_conversation_id == "conv-9"
    body, _ = get_metrics_response()
    assert b'model="ledger-mini"' in body
    assert not hasattr(sink, "entries")


def test_production_container_uses_logging_sink():
    assert isinstance(get_cost_sink(), LoggingCostSink)
