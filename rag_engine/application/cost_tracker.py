"""
===============================================================================
CRC CARD: application/cost_tracker.py
===============================================================================

Classes:
    CostTracker (write side)
    LoggingCostSink (production sink: log line + Prometheus counters)
    InMemoryCostSink (keeps every entry; tests and local inspection)

Responsibilities:
    - Record one CostEntry per successful provider call.
    - Price it from the provider profile when known.
    - Never block or fail the query: entries go through a bounded
      dispatcher; sink failures are logged and dropped.

Collaborators:
    - domain.services.CostSink
    - crosscutting.dispatch.BoundedDispatcher
    - crosscutting.metrics.record_provider_cost
    - application.fallback_chain (only caller)
===============================================================================
"""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Callable, Dict, List, Optional

from ..crosscutting.dispatch import BoundedDispatcher
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_provider_cost
from ..domain.entities import CostEntry, ProviderProfile
from ..domain.services import CostSink

ProfileLookup = Callable[[str, str], Optional[ProviderProfile]]


class LoggingCostSink:
    """Forwards each entry to the log and the spend counters; keeps nothing."""

    def write(self, entry: CostEntry) -> None:
        record_provider_cost(
            entry.provider_id, entry.model_id, entry.cost_usd, entry.tokens_in, entry.tokens_out
        )
        logger.info(
            "Provider cost",
            extra={
                "provider_id": entry.provider_id,
                "model_id": entry.model_id,
                "tokens_in": entry.tokens_in,
                "tokens_out": entry.tokens_out,
                "cost_usd": entry.cost_usd,
                "cost_conversation_id": entry.conversation_id,
            },
        )


class InMemoryCostSink:
    """Keeps every entry in memory; unbounded, so tests and local runs only. Thread-safe."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: List[CostEntry] = []

    def write(self, entry: CostEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[CostEntry]:
        with self._lock:
            return list(self._entries)

    def _totals(self, key: Callable[[CostEntry], str]) -> Dict[str, dict]:
        totals: Dict[str, dict] = defaultdict(
            lambda: {"calls": 0, "tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0}
        )
        for entry in self.entries:
            bucket = totals[key(entry)]
            bucket["calls"] += 1
            bucket["tokens_in"] += entry.tokens_in
            bucket["tokens_out"] += entry.tokens_out
            bucket["cost_usd"] = round(bucket["cost_usd"] + entry.cost_usd, 6)
        return dict(totals)

    def totals_by_provider(self) -> Dict[str, dict]:
        return self._totals(lambda e: e.provider_id)

    def totals_by_model(self) -> Dict[str, dict]:
        return self._totals(lambda e: f"{e.provider_id}:{e.model_id}")

    def totals_by_conversation(self) -> Dict[str, dict]:
        return self._totals(lambda e: e.conversation_id)

    def total_cost(self) -> float:
        return round(sum(e.cost_usd for e in self.entries), 6)


class CostTracker:
    def __init__(
        self,
        sink: CostSink,
        *,
        profile_lookup: Optional[ProfileLookup] = None,
        maxsize: int = 10_000,
    ) -> None:
        self._sink = sink
        self._profile_lookup = profile_lookup
        self._dispatcher: BoundedDispatcher[CostEntry] = BoundedDispatcher(
            name="cost_tracker", handler=self._write, maxsize=maxsize
        )

    async def _write(self, entry: CostEntry) -> None:
        self._sink.write(entry)

    def record(
        self,
        provider_id: str,
        model_id: str,
        tokens_in: int,
        tokens_out: int,
        conversation_id: str,
        *,
        profile: Optional[ProviderProfile] = None,
    ) -> None:
        """R: Fire and forget. Returns before the sink sees the entry."""
        if profile is None and self._profile_lookup is not None:
            profile = self._profile_lookup(model_id, provider_id)
        cost = profile.cost_for(tokens_in, tokens_out) if profile is not None else 0.0
        entry = CostEntry(
            provider_id=provider_id,
            model_id=model_id,
            tokens_in=int(tokens_in),
            tokens_out=int(tokens_out),
            conversation_id=conversation_id,
            cost_usd=round(cost, 6),
        )
        if not self._dispatcher.submit(entry):
            logger.warning(
                "Cost entry dropped",
                extra={"provider_id": provider_id, "model_id": model_id},
            )

    async def flush(self) -> None:
        await self._dispatcher.flush()

    async def aclose(self) -> None:
        await self._dispatcher.aclose()

    @property
    def dropped(self) -> int:
        return self._dispatcher.dropped
