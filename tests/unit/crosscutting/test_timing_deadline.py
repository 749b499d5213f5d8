"""
Name: Timing Tests (Timer, StageTimings, Deadline)
"""

import pytest

from rag_engine.crosscutting.timing import Deadline, StageTimings, Timer

pytestmark = pytest.mark.unit


class _Clock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_timer_requires_start():
    with pytest.raises(RuntimeError):
        Timer().stop()


def test_stage_timings_expose_ms_keys():
    timings = StageTimings()
    with timings.measure("search"):
        pass
    timings.record("generate", 12.5)

    result = timings.to_dict()

    assert set(result) == {"search_ms", "generate_ms", "total_ms"}
    assert result["generate_ms"] == 12.5


def test_deadline_remaining_and_expiry():
    clock = _Clock()
    deadline = Deadline(10.0, clock=clock)

    assert deadline.remaining() == 10.0
    clock.now += 10.0
    assert deadline.expired


def test_sub_deadline_is_a_fraction_of_what_is_left():
    clock = _Clock()
    deadline = Deadline(10.0, clock=clock)
    clock.now += 2.0

    sub = deadline.sub_deadline(0.25)

    assert sub.remaining() == pytest.approx(2.0)
    assert sub.remaining() <= deadline.remaining()


def test_cap_never_exceeds_remaining():
    clock = _Clock()
    deadline = Deadline(3.0, clock=clock)

    assert deadline.cap(30.0) == 3.0
    assert deadline.cap(1.0) == 1.0
    assert deadline.cap(None) == 3.0


@pytest.mark.parametrize("fraction", [0.0, 1.5, -0.1])
def test_invalid_fraction(fraction):
    with pytest.raises(ValueError):
        Deadline(1.0).sub_deadline(fraction)


def test_non_positive_deadline():
    with pytest.raises(ValueError):
        Deadline(0)
