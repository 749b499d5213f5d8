"""
Name: Bounded Dispatcher Tests

Responsibilities:
  - Items reach the handler off the caller's path
  - Full queue and handler failures drop items without raising
"""

import pytest

from rag_engine.crosscutting.dispatch import BoundedDispatcher

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_items_are_handled_in_order():
    seen = []

    async def handler(item):
        seen.append(item)

    dispatcher = BoundedDispatcher(name="test", handler=handler, maxsize=10)
    for i in range(3):
        assert dispatcher.submit(i) is True
    await dispatcher.flush()

    assert seen == [0, 1, 2]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_full_queue_drops():
    async def handler(item):
        return None

    dispatcher = BoundedDispatcher(name="test", handler=handler, maxsize=1)

    assert dispatcher.submit("a") is True
    assert dispatcher.submit("b") is False
    assert dispatcher.dropped == 1
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_handler_failure_is_contained():
    seen = []

    async def handler(item):
        if item == "bad":
            raise RuntimeError("sink down")
        seen.append(item)

    dispatcher = BoundedDispatcher(name="test", handler=handler)
    dispatcher.submit("bad")
    dispatcher.submit("good")
    await dispatcher.flush()

    assert seen == ["good"]
    assert dispatcher.dropped == 1


def test_invalid_maxsize():
    with pytest.raises(ValueError):
        BoundedDispatcher(name="test", handler=None, maxsize=0)
