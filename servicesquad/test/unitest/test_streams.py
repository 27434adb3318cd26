import asyncio

import pytest

from utils.locks import KeyedLock
from utils.streams import Broadcaster


async def test_subscription_receives_items_in_order():
    hub = Broadcaster()
    sub = hub.subscribe("booking-1")

    assert hub.publish("booking-1", 1) == 1
    hub.publish("booking-1", 2)

    assert await sub.get(timeout=1) == 1
    assert await sub.get(timeout=1) == 2


async def test_publish_only_reaches_matching_key():
    hub = Broadcaster()
    sub = hub.subscribe("a")

    assert hub.publish("b", "ignored") == 0
    hub.publish("a", "kept")

    assert await sub.get(timeout=1) == "kept"


async def test_conflating_subscription_keeps_only_newest():
    hub = Broadcaster()
    sub = hub.subscribe("tracking", conflate=True)

    for i in range(5):
        hub.publish("tracking", i)

    assert await sub.get(timeout=1) == 4
    with pytest.raises(asyncio.TimeoutError):
        await sub.get(timeout=0.05)


async def test_closed_subscription_gets_nothing_more():
    hub = Broadcaster()
    sub = hub.subscribe("k")
    hub.publish("k", "before")

    sub.close()

    assert hub.publish("k", "after") == 0
    assert hub.subscriber_count("k") == 0
    assert [item async for item in sub] == []


async def test_close_key_ends_iteration_for_waiting_consumer():
    hub = Broadcaster()
    sub = hub.subscribe("k")

    async def consume():
        return [item async for item in sub]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    hub.publish("k", "x")
    await asyncio.sleep(0.01)
    hub.close_key("k")

    assert await asyncio.wait_for(consumer, 1) == ["x"]


async def test_subscription_as_context_manager_detaches():
    hub = Broadcaster()
    async with hub.subscribe("k") as sub:
        assert hub.subscriber_count("k") == 1
    assert sub.closed
    assert hub.subscriber_count("k") == 0


async def test_keyed_lock_serialises_same_key():
    locks = KeyedLock()
    order = []

    async def worker(name, delay):
        async with locks.hold("booking-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(delay)
            order.append(f"{name}-out")

    await asyncio.gather(worker("first", 0.02), worker("second", 0))

    assert order == ["first-in", "first-out", "second-in", "second-out"]
    assert len(locks) == 0


async def test_keyed_lock_does_not_block_other_keys():
    locks = KeyedLock()
    entered = asyncio.Event()

    async with locks.hold("a"):
        async def other():
            async with locks.hold("b"):
                entered.set()

        await asyncio.wait_for(other(), 1)
        assert locks.locked("a")
        assert not locks.locked("b")

    assert entered.is_set()
