import asyncio
import logging
from typing import Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from dtos.dtos import TrackingUpdate
from utils.streams import Broadcaster, Subscription

logger = logging.getLogger(__name__)

LATEST_KEY = "tracking:latest:{booking_id}"
CHANNEL = "tracking:channel:{booking_id}"
GEO_KEY = "tracking:geo"
END_MARKER = "__end__"
LATEST_TTL_SECONDS = 3600


class InMemoryTrackingPublisher:
    """Latest update per booking plus conflating in-process subscriptions."""

    def __init__(self):
        self._latest: Dict[int, TrackingUpdate] = {}
        self._broadcaster: Broadcaster[TrackingUpdate] = Broadcaster()

    async def publish(self, booking_id: int, update: TrackingUpdate) -> None:
        self._latest[booking_id] = update
        self._broadcaster.publish(booking_id, update)

    async def latest(self, booking_id: int) -> Optional[TrackingUpdate]:
        return self._latest.get(booking_id)

    def subscribe(self, booking_id: int) -> Subscription[TrackingUpdate]:
        return self._broadcaster.subscribe(booking_id, conflate=True)

    def subscriber_count(self, booking_id: int) -> int:
        return self._broadcaster.subscriber_count(booking_id)

    async def end(self, booking_id: int) -> None:
        self._broadcaster.close_key(booking_id)
        self._latest.pop(booking_id, None)

    async def aclose(self) -> None:
        self._broadcaster.close_all()
        self._latest.clear()


class RedisTrackingPublisher:
    """
    Shares tracking updates between app instances through Redis.

    The latest update is stored as JSON, every update is published on a
    per-booking channel and the provider position is kept in a GEO set.
    Local subscribers are fed by one pub/sub listener per booking that
    exits once its last subscriber is gone.
    """

    def __init__(self, redis_client: Redis, poll_timeout: float = 1.0):
        self.redis = redis_client
        self._poll_timeout = poll_timeout
        self._broadcaster: Broadcaster[TrackingUpdate] = Broadcaster()
        self._listeners: Dict[int, asyncio.Task] = {}

    async def publish(self, booking_id: int, update: TrackingUpdate) -> None:
        payload = update.model_dump_json()
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.set(LATEST_KEY.format(booking_id=booking_id), payload, ex=LATEST_TTL_SECONDS)
                # GEOADD takes longitude first
                pipe.geoadd(GEO_KEY, (update.lng, update.lat, str(booking_id)))
                pipe.publish(CHANNEL.format(booking_id=booking_id), payload)
                await pipe.execute()
        except (RedisConnectionError, RedisError):
            logger.exception("Problems publishing tracking update for booking %s", booking_id)
            raise

    async def latest(self, booking_id: int) -> Optional[TrackingUpdate]:
        raw = await self.redis.get(LATEST_KEY.format(booking_id=booking_id))
        if raw is None:
            return None
        return TrackingUpdate.model_validate_json(raw)

    def subscribe(self, booking_id: int) -> Subscription[TrackingUpdate]:
        subscription = self._broadcaster.subscribe(booking_id, conflate=True)
        listener = self._listeners.get(booking_id)
        if listener is None or listener.done():
            self._listeners[booking_id] = asyncio.create_task(self._listen(booking_id))
        return subscription

    async def end(self, booking_id: int) -> None:
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.zrem(GEO_KEY, str(booking_id))
                pipe.publish(CHANNEL.format(booking_id=booking_id), END_MARKER)
                await pipe.execute()
        except (RedisConnectionError, RedisError):
            logger.exception("Problems ending tracking channel for booking %s", booking_id)
        self._broadcaster.close_key(booking_id)

    async def aclose(self) -> None:
        self._broadcaster.close_all()
        listeners = list(self._listeners.values())
        self._listeners.clear()
        for task in listeners:
            task.cancel()
        await asyncio.gather(*listeners, return_exceptions=True)

    async def _listen(self, booking_id: int) -> None:
        channel = CHANNEL.format(booking_id=booking_id)
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            while self._broadcaster.subscriber_count(booking_id) > 0:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
                if message is None:
                    continue
                data = message.get("data")
                if data == END_MARKER:
                    self._broadcaster.close_key(booking_id)
                    break
                try:
                    update = TrackingUpdate.model_validate_json(data)
                except ValueError:
                    logger.warning("Dropping malformed tracking message on %s", channel)
                    continue
                self._broadcaster.publish(booking_id, update)
        except (RedisConnectionError, RedisError):
            logger.exception("Tracking listener for booking %s lost its Redis connection", booking_id)
            self._broadcaster.close_key(booking_id)
        finally:
            self._listeners.pop(booking_id, None)
            await pubsub.aclose()
