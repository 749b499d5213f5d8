"""
===============================================================================
MODULE: Timing utilities (Timer + StageTimings + Deadline)
===============================================================================

Components:
  - Timer: perf_counter stopwatch
  - StageTimings: per-stage durations of one query, in ms
  - Deadline: overall query budget split into per-stage slices
===============================================================================
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional


class Timer:
    """Stopwatch; usable as a context manager. Reads while running are live."""

    __slots__ = ("_started", "_stopped")

    def __init__(self) -> None:
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def start(self) -> "Timer":
        self._started, self._stopped = time.perf_counter(), None
        return self

    def stop(self) -> "Timer":
        if self._started is None:
            raise RuntimeError("Timer not started")
        self._stopped = time.perf_counter()
        return self

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        until = time.perf_counter() if self._stopped is None else self._stopped
        return until - self._started

    @property
    def elapsed_ms(self) -> float:
        return round(self.elapsed_seconds * 1000, 2)

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()


class StageTimings:
    """Durations of the pipeline stages of one query, keyed ``<stage>_ms``."""

    def __init__(self) -> None:
        self._total = Timer().start()
        self._ms: dict[str, float] = {}

    @contextmanager
    def measure(self, stage: str) -> Iterator[Timer]:
        timer = Timer().start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record(stage, timer.elapsed_ms)

    def record(self, stage: str, elapsed_ms: float) -> None:
        self._ms[f"{stage}_ms"] = elapsed_ms

    def to_dict(self) -> dict[str, float]:
        return {**self._ms, "total_ms": self._total.elapsed_ms}


class Deadline:
    """
    R: Absolute deadline on the monotonic clock.

    A stage asks for `sub_deadline(fraction)`: a slice of what is left, never
    more than the parent's remainder. The last stage uses `remaining()`.
    """

    __slots__ = ("_expires_at", "_clock")

    def __init__(
        self, seconds: float, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        if seconds <= 0:
            raise ValueError("deadline seconds must be > 0")
        self._clock = clock
        self._expires_at = clock() + seconds

    @classmethod
    def _at(cls, expires_at: float, clock: Callable[[], float]) -> "Deadline":
        inst = cls.__new__(cls)
        inst._clock = clock
        inst._expires_at = expires_at
        return inst

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def sub_deadline(self, fraction: float) -> "Deadline":
        if not 0 < fraction <= 1:
            raise ValueError("fraction must be in (0, 1]")
        now = self._clock()
        budget = max(0.0, self._expires_at - now) * fraction
        return Deadline._at(now + budget, self._clock)

    def cap(self, seconds: float | None) -> float:
        """Smaller of `seconds` and what is left (None means what is left)."""
        left = self.remaining()
        if seconds is None:
            return left
        return min(seconds, left)
