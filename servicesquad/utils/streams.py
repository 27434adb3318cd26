"""In-process publish/subscribe with cancellable subscriptions.

A Subscription is an async iterator. Closing it detaches it from its
broadcaster and ends the iteration; nothing is delivered afterwards.
"""

import asyncio
import logging
from typing import Callable, Dict, Generic, Hashable, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):

    def __init__(self, key: Hashable, conflate: bool = False, on_close: Optional[Callable[["Subscription[T]"], None]] = None):
        self.key = key
        self.conflate = conflate
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: T) -> bool:
        if self._closed:
            return False
        if self.conflate:
            # only the newest item is kept pending
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(item)
        return True

    async def get(self, timeout: Optional[float] = None) -> T:
        if timeout is None:
            return await self.__anext__()
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class Broadcaster(Generic[T]):
    """Fans items published under a key out to every live subscription of that key."""

    def __init__(self):
        self._subscribers: Dict[Hashable, Set[Subscription[T]]] = {}

    def subscribe(self, key: Hashable, conflate: bool = False) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(key, conflate=conflate, on_close=self._detach)
        self._subscribers.setdefault(key, set()).add(subscription)
        return subscription

    def publish(self, key: Hashable, item: T) -> int:
        delivered = 0
        for subscription in list(self._subscribers.get(key, ())):
            if subscription.push(item):
                delivered += 1
        return delivered

    def close_key(self, key: Hashable) -> None:
        for subscription in list(self._subscribers.get(key, ())):
            subscription.close()
        self._subscribers.pop(key, None)

    def close_all(self) -> None:
        for key in list(self._subscribers):
            self.close_key(key)

    def subscriber_count(self, key: Hashable) -> int:
        return len(self._subscribers.get(key, ()))

    def _detach(self, subscription: Subscription[T]) -> None:
        subscribers = self._subscribers.get(subscription.key)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.key]
            logger.debug("Last subscriber detached from %s", subscription.key)
