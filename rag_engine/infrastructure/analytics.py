"""
===============================================================================
MODULE: infrastructure/analytics.py
===============================================================================

CRC CARD (Class)
-------------------------------------------------------------------------------
Classes:
    QueueAnalyticsEmitter (fire-and-forget producer)
    LoggingAnalyticsSink / InMemoryAnalyticsSink (consumers)

Responsibilities:
    - Publish one QueryEvent per finished query without delaying the answer.
    - Bound memory: a full queue drops the event and logs it.
    - Keep the analytics collaborator behind the AnalyticsSink port.

Collaborators:
    - domain.services.AnalyticsSink
    - crosscutting.dispatch.BoundedDispatcher
    - crosscutting.logger
===============================================================================
"""

from __future__ import annotations

from typing import List

from ..crosscutting.dispatch import BoundedDispatcher
from ..crosscutting.logger import logger
from ..domain.entities import QueryEvent
from ..domain.services import AnalyticsSink


class LoggingAnalyticsSink:
    """Default sink: one structured log line per query."""

    async def publish(self, event: QueryEvent) -> None:
        logger.info(
            "Query event",
            extra={
                "event_query_id": event.query_id,
                "event_conversation_id": event.conversation_id,
                "state": event.state,
                "provider_used": event.provider_used,
                "model_used": event.model_used,
                "tokens_in": event.tokens_in,
                "tokens_out": event.tokens_out,
                "latency_ms": event.latency_ms,
                "citations": len(event.citations),
            },
        )


class InMemoryAnalyticsSink:
    """Keeps events in a list (tests / local inspection)."""

    def __init__(self) -> None:
        self.events: List[QueryEvent] = []

    async def publish(self, event: QueryEvent) -> None:
        self.events.append(event)


class QueueAnalyticsEmitter:
    def __init__(self, sink: AnalyticsSink, *, maxsize: int = 1000) -> None:
        self._sink = sink
        self._dispatcher: BoundedDispatcher[QueryEvent] = BoundedDispatcher(
            name="analytics", handler=sink.publish, maxsize=maxsize
        )

    def emit(self, event: QueryEvent) -> bool:
        return self._dispatcher.submit(event)

    async def flush(self) -> None:
        await self._dispatcher.flush()

    async def aclose(self) -> None:
        await self._dispatcher.aclose()

    @property
    def dropped(self) -> int:
        return self._dispatcher.dropped
