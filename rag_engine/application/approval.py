"""
===============================================================================
CRC CARD: application/approval.py
===============================================================================

Classes:
    AutoApproveGate, ReviewQueueGate

Responsibilities:
    - Decide whether a validated answer may be shown (ApprovalGate port).
    - ReviewQueueGate: hold answers for a human reviewer; the orchestrator
      withholds the text while the status is pending or rejected.
    - Both the review queue and the record of past decisions are bounded;
      the oldest entries go first.

Collaborators:
    - domain.services.ApprovalGate
    - application.orchestrator (calls review() after Validating)
===============================================================================
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import List

from ..crosscutting.logger import logger
from ..domain.entities import AnswerResult, ApprovalStatus

WITHHELD_ANSWER_TEXT = (
    "Your question has been received. The answer is being reviewed and will "
    "be shared shortly."
)


class AutoApproveGate:
    async def review(self, result: AnswerResult) -> ApprovalStatus:
        return ApprovalStatus.APPROVED


class ReviewQueueGate:
    """Keeps answers pending until decide() is called."""

    def __init__(self, *, max_pending: int = 10_000, max_decisions: int = 10_000) -> None:
        if max_pending <= 0 or max_decisions <= 0:
            raise ValueError("max_pending and max_decisions must be > 0")
        self._max_pending = max_pending
        self._max_decisions = max_decisions
        self._lock = asyncio.Lock()
        self._pending: "OrderedDict[str, AnswerResult]" = OrderedDict()
        self._decisions: "OrderedDict[str, ApprovalStatus]" = OrderedDict()

    async def review(self, result: AnswerResult) -> ApprovalStatus:
        async with self._lock:
            decided = self._decisions.get(result.query_id)
            if decided is not None:
                return decided
            self._pending[result.query_id] = result
            dropped = []
            while len(self._pending) > self._max_pending:
                dropped.append(self._pending.popitem(last=False)[0])
        logger.info("Answer held for review", extra={"query_id": result.query_id})
        if dropped:
            logger.warning(
                "Review queue full, oldest held answers dropped",
                extra={"dropped_query_ids": dropped, "max_pending": self._max_pending},
            )
        return ApprovalStatus.PENDING

    async def pending(self) -> List[AnswerResult]:
        async with self._lock:
            return list(self._pending.values())

    async def decide(self, query_id: str, approved: bool) -> AnswerResult:
        """R: Records the decision and returns the held answer (KeyError if unknown)."""
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        async with self._lock:
            result = self._pending.pop(query_id)
            self._decisions[query_id] = status
            while len(self._decisions) > self._max_decisions:
                self._decisions.popitem(last=False)
        result.approval_status = status
        logger.info(
            "Review decision recorded",
            extra={"query_id": query_id, "approval_status": status.value},
        )
        return result
