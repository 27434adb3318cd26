import logging
from typing import Optional

from config.conf import settings, REDIS_BACKEND
from db.db import SessionFactory, get_async_session
from db.redis_db import create_redis_client
from services.availability_service import AvailabilityService
from services.booking_service import BookingService
from services.directions_service import GoogleDirectionsService
from services.interfaces import DirectionsProvider, Notifier, TrackingPublisher
from services.notification_service import NotificationService
from services.tracking_publisher import InMemoryTrackingPublisher, RedisTrackingPublisher
from services.tracking_service import TrackingService

logger = logging.getLogger(__name__)


def build_publisher(backend: str = settings.tracking_backend) -> TrackingPublisher:
    if backend == REDIS_BACKEND:
        logger.info("Tracking updates fan out through Redis")
        return RedisTrackingPublisher(create_redis_client())
    return InMemoryTrackingPublisher()


class Container:
    """Wires the services together; the tracker follows booking transitions."""

    def __init__(
        self,
        session_factory: SessionFactory = get_async_session,
        availability: Optional[AvailabilityService] = None,
        notifier: Optional[Notifier] = None,
        publisher: Optional[TrackingPublisher] = None,
        directions: Optional[DirectionsProvider] = None,
    ):
        self.notifications = NotificationService(session_factory)
        self.availability = availability or AvailabilityService(session_factory)
        self.directions = directions or GoogleDirectionsService()
        self.publisher = publisher or build_publisher()
        notifier = notifier or self.notifications

        self.bookings = BookingService(session_factory, availability=self.availability, notifier=notifier)
        self.tracking = TrackingService(self.publisher, directions=self.directions, notifier=notifier)
        self.bookings.add_transition_listener(self.tracking.on_booking_event)

    async def aclose(self) -> None:
        self.bookings.remove_transition_listener(self.tracking.on_booking_event)
        await self.tracking.aclose()
        await self.bookings.aclose()
        await self.publisher.aclose()
        aclose_directions = getattr(self.directions, "aclose", None)
        if aclose_directions is not None:
            await aclose_directions()
        redis_client = getattr(self.publisher, "redis", None)
        if redis_client is not None:
            await redis_client.aclose()
