from typing import Any, Dict, Optional, Protocol, Tuple

from dtos.dtos import RouteData, TrackingUpdate
from utils.streams import Subscription


class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        booking_id: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any: ...


class DirectionsProvider(Protocol):
    async def fetch_route(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> RouteData: ...


class TrackingPublisher(Protocol):
    async def publish(self, booking_id: int, update: TrackingUpdate) -> None: ...

    async def latest(self, booking_id: int) -> Optional[TrackingUpdate]: ...

    def subscribe(self, booking_id: int) -> Subscription[TrackingUpdate]: ...

    async def end(self, booking_id: int) -> None: ...

    async def aclose(self) -> None: ...
