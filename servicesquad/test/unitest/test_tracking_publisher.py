import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from dtos.dtos import TrackingUpdate
from services.tracking_publisher import (
    END_MARKER,
    GEO_KEY,
    InMemoryTrackingPublisher,
    RedisTrackingPublisher,
)


def make_update(lat=12.98, distance=900.0):
    return TrackingUpdate(
        booking_id=3,
        provider_id="prov-1",
        lat=lat,
        lng=77.59,
        timestamp=datetime(2030, 6, 5, 8, 0, tzinfo=timezone.utc),
        distance_meters=distance,
    )


def fake_redis():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1, 1])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    redis.get = AsyncMock()
    return redis, pipe


async def test_in_memory_keeps_latest_and_conflates():
    publisher = InMemoryTrackingPublisher()
    stream = publisher.subscribe(3)

    await publisher.publish(3, make_update(distance=900))
    await publisher.publish(3, make_update(distance=800))

    assert (await publisher.latest(3)).distance_meters == 800
    assert (await stream.get(timeout=1)).distance_meters == 800
    with pytest.raises(asyncio.TimeoutError):
        await stream.get(timeout=0.05)


async def test_in_memory_end_closes_subscribers():
    publisher = InMemoryTrackingPublisher()
    stream = publisher.subscribe(3)
    await publisher.publish(3, make_update())

    await publisher.end(3)

    assert stream.closed
    assert publisher.subscriber_count(3) == 0
    assert await publisher.latest(3) is None


async def test_redis_publish_writes_latest_geo_and_channel():
    redis, pipe = fake_redis()
    publisher = RedisTrackingPublisher(redis)
    update = make_update()

    await publisher.publish(3, update)

    payload = update.model_dump_json()
    pipe.set.assert_called_once_with("tracking:latest:3", payload, ex=3600)
    pipe.geoadd.assert_called_once_with(GEO_KEY, (77.59, 12.98, "3"))
    pipe.publish.assert_called_once_with("tracking:channel:3", payload)
    pipe.execute.assert_awaited_once()


async def test_redis_publish_propagates_connection_errors():
    redis, pipe = fake_redis()
    pipe.execute.side_effect = RedisConnectionError("down")

    with pytest.raises(RedisConnectionError):
        await RedisTrackingPublisher(redis).publish(3, make_update())


async def test_redis_latest_decodes_json():
    redis, _ = fake_redis()
    update = make_update()
    redis.get.return_value = update.model_dump_json()
    publisher = RedisTrackingPublisher(redis)

    assert (await publisher.latest(3)).model_dump() == update.model_dump()
    redis.get.return_value = None
    assert await publisher.latest(3) is None


async def test_redis_end_removes_position_and_signals_listeners():
    redis, pipe = fake_redis()

    await RedisTrackingPublisher(redis).end(3)

    pipe.zrem.assert_called_once_with(GEO_KEY, "3")
    pipe.publish.assert_called_once_with("tracking:channel:3", END_MARKER)


async def test_redis_listener_feeds_local_subscribers_until_end():
    redis, _ = fake_redis()
    update = make_update()
    messages = iter([
        None,
        {"type": "message", "data": "{not json"},
        {"type": "message", "data": update.model_dump_json()},
        {"type": "message", "data": END_MARKER},
    ])

    async def get_message(ignore_subscribe_messages, timeout):
        await asyncio.sleep(0.01)
        return next(messages)

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = get_message
    redis.pubsub.return_value = pubsub
    publisher = RedisTrackingPublisher(redis, poll_timeout=0.01)

    stream = publisher.subscribe(3)
    received = [item async for item in stream]

    assert [item.model_dump() for item in received] == [update.model_dump()]
    pubsub.subscribe.assert_awaited_once_with("tracking:channel:3")
    pubsub.aclose.assert_awaited_once()
    await publisher.aclose()
