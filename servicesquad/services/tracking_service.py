"""Live tracking of a provider travelling to a booking.

One session per booking. Samples are applied under the booking's lock in
arrival order; route lookups run as background tasks so a slow directions
API never holds up the next sample, and at most one lookup per session is
in flight at any time.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Union

from config.conf import settings
from db.models import Booking, BookingStatus
from dtos.dtos import BookingEvent, BookingOut, LocationSample, TrackingSnapshot, TrackingUpdate
from services import notification_service as messages
from services.exceptions import DirectionsError, InputRejected, NotFound
from services.interfaces import DirectionsProvider, Notifier, TrackingPublisher
from utils.geo import (
    Point,
    calculate_eta,
    decode_polyline,
    distance_between,
    format_distance,
    format_duration,
    is_within_geofence,
    straight_line_duration_s,
)
from utils.locks import KeyedLock
from utils.streams import Subscription
from utils.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RouteFetchMark:
    timestamp: datetime
    location: Point


@dataclass
class TrackingSession:
    booking_id: int
    provider_id: str
    customer_id: str
    provider_name: str
    service_name: str
    customer_location: Point
    started_at: datetime
    travel_path: Deque[Point]
    current: Optional[Point] = None
    route_coordinates: List[Point] = field(default_factory=list)
    distance_meters: Optional[float] = None
    straight_line_meters: Optional[float] = None
    duration_seconds: Optional[float] = None
    eta: Optional[datetime] = None
    has_arrived: bool = False
    last_route_fetch: Optional[RouteFetchMark] = None
    route_error: bool = False
    route_valid: bool = False
    active: bool = True
    ended_at: Optional[datetime] = None
    last_sample_at: Optional[datetime] = None
    fetch_task: Optional[asyncio.Task] = None

    @property
    def fetch_in_flight(self) -> bool:
        return self.fetch_task is not None and not self.fetch_task.done()


class TrackingService:

    def __init__(
        self,
        publisher: TrackingPublisher,
        directions: Optional[DirectionsProvider] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        path_min_step_meters: float = settings.path_min_step_meters,
        path_max_points: int = settings.path_max_points,
        route_min_distance_meters: float = settings.route_min_distance_meters,
        route_refetch_distance_meters: float = settings.route_refetch_distance_meters,
        route_refetch_interval_seconds: float = settings.route_refetch_interval_seconds,
        plausibility_min_ratio: float = settings.route_plausibility_min_ratio,
        plausibility_max_ratio: float = settings.route_plausibility_max_ratio,
        average_speed_kmh: float = settings.average_speed_kmh,
        arrival_radius_meters: float = settings.arrival_radius_meters,
    ):
        self.publisher = publisher
        self._directions = directions
        self._notifier = notifier
        self._clock = clock
        self.path_min_step_meters = path_min_step_meters
        self.path_max_points = path_max_points
        self.route_min_distance_meters = route_min_distance_meters
        self.route_refetch_distance_meters = route_refetch_distance_meters
        self.route_refetch_interval_seconds = route_refetch_interval_seconds
        self.plausibility_min_ratio = plausibility_min_ratio
        self.plausibility_max_ratio = plausibility_max_ratio
        self.average_speed_kmh = average_speed_kmh
        self.arrival_radius_meters = arrival_radius_meters

        self._sessions: Dict[int, TrackingSession] = {}
        self._locks = KeyedLock()

    # ---- session lifecycle ----

    async def start_tracking(self, booking: Union[Booking, BookingOut]) -> TrackingSession:
        if booking.lat is None or booking.lng is None:
            raise InputRejected(f"Booking {booking.id} has no customer location", code="NO_CUSTOMER_LOCATION")

        async with self._locks.hold(booking.id):
            existing = self._sessions.get(booking.id)
            if existing is not None and existing.active:
                return existing

            session = TrackingSession(
                booking_id=booking.id,
                provider_id=booking.provider_id,
                customer_id=booking.customer_id,
                provider_name=booking.provider_name,
                service_name=booking.service_name,
                customer_location=(booking.lat, booking.lng),
                started_at=self._clock(),
                travel_path=deque(maxlen=self.path_max_points),
            )
            self._sessions[booking.id] = session
        logger.info("Tracking started for booking %s", booking.id)
        return session

    async def stop_tracking(self, booking_id: int) -> TrackingSnapshot:
        async with self._locks.hold(booking_id):
            session = self._sessions.pop(booking_id, None)
            if session is None:
                raise NotFound(f"No active tracking session for booking {booking_id}")
            session.active = False
            session.ended_at = self._clock()
            task = session.fetch_task
            if task is not None and not task.done():
                task.cancel()
            if session.current is not None:
                await self._publish(session, session.last_sample_at or session.ended_at)

        try:
            await self.publisher.end(booking_id)
        except Exception:
            logger.exception("Failed to close tracking stream for booking %s", booking_id)
        logger.info("Tracking stopped for booking %s", booking_id)
        return self._snapshot(session)

    def get_session(self, booking_id: int) -> Optional[TrackingSession]:
        return self._sessions.get(booking_id)

    def snapshot(self, booking_id: int) -> TrackingSnapshot:
        session = self._sessions.get(booking_id)
        if session is None:
            raise NotFound(f"No active tracking session for booking {booking_id}")
        return self._snapshot(session)

    def active_sessions(self) -> List[int]:
        return [booking_id for booking_id, s in self._sessions.items() if s.active]

    def subscribe(self, booking_id: int) -> Subscription[TrackingUpdate]:
        return self.publisher.subscribe(booking_id)

    async def on_booking_event(self, event: BookingEvent) -> None:
        """Start tracking when the provider sets off, stop once the booking is over."""
        if event.status == BookingStatus.on_the_way:
            if event.booking.lat is None or event.booking.lng is None:
                logger.warning("Booking %s is on the way but has no customer location", event.booking_id)
                return
            await self.start_tracking(event.booking)
        elif event.status.is_terminal and event.booking_id in self._sessions:
            await self.stop_tracking(event.booking_id)

    async def wait_for_route(self, booking_id: int) -> None:
        session = self._sessions.get(booking_id)
        if session is not None and session.fetch_task is not None:
            await asyncio.gather(session.fetch_task, return_exceptions=True)

    async def aclose(self) -> None:
        tasks = [s.fetch_task for s in self._sessions.values() if s.fetch_in_flight]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()

    # ---- samples ----

    async def ingest(self, booking_id: int, sample: LocationSample) -> TrackingUpdate:
        arrived_now = False
        async with self._locks.hold(booking_id):
            session = self._sessions.get(booking_id)
            if session is None or not session.active:
                raise NotFound(f"No active tracking session for booking {booking_id}")

            point = sample.point
            session.current = point
            session.last_sample_at = sample.timestamp

            if not session.travel_path or distance_between(session.travel_path[-1], point) > self.path_min_step_meters:
                session.travel_path.append(point)

            immediate = distance_between(point, session.customer_location)
            if immediate > 0:
                session.distance_meters = immediate
                session.straight_line_meters = immediate

            if self._should_fetch_route(session, point, sample.timestamp, immediate):
                session.last_route_fetch = RouteFetchMark(timestamp=sample.timestamp, location=point)
                session.fetch_task = asyncio.create_task(self._fetch_route(session, point, immediate))
            if not session.route_valid and session.distance_meters is not None:
                self._apply_straight_line(session, session.distance_meters)

            if not session.has_arrived and is_within_geofence(point, session.customer_location, self.arrival_radius_meters):
                session.has_arrived = True
                arrived_now = True
                logger.info("Provider arrived for booking %s", booking_id)

            update = await self._publish(session, sample.timestamp)

        if arrived_now:
            await self._notify_arrival(session)
        return update

    def _should_fetch_route(self, session: TrackingSession, point: Point, timestamp: datetime, immediate: float) -> bool:
        if self._directions is None or immediate <= self.route_min_distance_meters:
            return False
        if session.fetch_in_flight:
            return False
        last = session.last_route_fetch
        if last is None:
            return True
        if distance_between(last.location, point) > self.route_refetch_distance_meters:
            return True
        return (timestamp - last.timestamp).total_seconds() >= self.route_refetch_interval_seconds

    async def _fetch_route(self, session: TrackingSession, origin: Point, immediate: float) -> None:
        route = None
        coordinates: List[Point] = []
        try:
            route = await self._directions.fetch_route(origin, session.customer_location)
            if self._is_plausible(route.distance_meters, route.duration_seconds, immediate):
                coordinates = decode_polyline(route.polyline) if route.polyline else []
            else:
                logger.warning(
                    "Discarding implausible route for booking %s: %.0fm vs %.0fm straight line",
                    session.booking_id, route.distance_meters, immediate,
                )
                route = None
        except DirectionsError as error:
            logger.warning("Route lookup failed for booking %s: %s", session.booking_id, error)
            route = None
        except ValueError:
            logger.warning("Undecodable route polyline for booking %s", session.booking_id)
            route = None
        except Exception:
            logger.exception("Unexpected route lookup failure for booking %s", session.booking_id)
            route = None

        async with self._locks.hold(session.booking_id):
            # the session may have been stopped or replaced meanwhile
            if not session.active or self._sessions.get(session.booking_id) is not session:
                return
            if route is not None:
                session.distance_meters = route.distance_meters
                session.duration_seconds = route.duration_seconds
                session.eta = calculate_eta(route.distance_meters, self.average_speed_kmh, now=self._clock())
                session.route_coordinates = coordinates
                session.route_error = False
                session.route_valid = True
            else:
                session.route_coordinates = []
                session.route_error = True
                session.route_valid = False
                # samples ingested while the lookup ran are newer than its origin
                self._apply_straight_line(session, session.straight_line_meters or immediate)
            await self._publish(session, session.last_sample_at or self._clock())

    def _is_plausible(self, distance: float, duration: float, immediate: float) -> bool:
        if distance <= 0 or duration <= 0:
            return False
        return self.plausibility_min_ratio * immediate <= distance <= self.plausibility_max_ratio * immediate

    def _apply_straight_line(self, session: TrackingSession, distance: float) -> None:
        session.distance_meters = distance
        session.duration_seconds = straight_line_duration_s(distance, self.average_speed_kmh)
        session.eta = calculate_eta(distance, self.average_speed_kmh, now=self._clock())

    # ---- output ----

    def _update(self, session: TrackingSession, timestamp: datetime) -> TrackingUpdate:
        lat, lng = session.current
        return TrackingUpdate(
            booking_id=session.booking_id,
            provider_id=session.provider_id,
            lat=lat,
            lng=lng,
            timestamp=timestamp,
            distance_meters=session.distance_meters,
            duration_seconds=session.duration_seconds,
            eta=session.eta,
            distance_text=format_distance(session.distance_meters) if session.distance_meters is not None else None,
            duration_text=format_duration(session.duration_seconds) if session.duration_seconds is not None else None,
            has_arrived=session.has_arrived,
            route_error=session.route_error,
            route_coordinates=list(session.route_coordinates),
            active=session.active,
        )

    async def _publish(self, session: TrackingSession, timestamp: datetime) -> TrackingUpdate:
        update = self._update(session, timestamp)
        try:
            await self.publisher.publish(session.booking_id, update)
        except Exception:
            logger.exception("Failed to publish tracking update for booking %s", session.booking_id)
        return update

    async def _notify_arrival(self, session: TrackingSession) -> None:
        if self._notifier is None:
            return
        title, body = messages.render_message(messages.PROVIDER_ARRIVED, session.provider_name, session.service_name)
        try:
            await self._notifier.notify(
                session.customer_id, messages.PROVIDER_ARRIVED, title, body, booking_id=session.booking_id
            )
        except Exception:
            logger.exception("Failed to send arrival notification for booking %s", session.booking_id)

    def _snapshot(self, session: TrackingSession) -> TrackingSnapshot:
        return TrackingSnapshot(
            booking_id=session.booking_id,
            provider_id=session.provider_id,
            customer_id=session.customer_id,
            provider_name=session.provider_name,
            service_name=session.service_name,
            customer_location=session.customer_location,
            current=session.current,
            travel_path=list(session.travel_path),
            route_coordinates=list(session.route_coordinates),
            distance_meters=session.distance_meters,
            duration_seconds=session.duration_seconds,
            eta=session.eta,
            has_arrived=session.has_arrived,
            route_error=session.route_error,
            active=session.active,
            started_at=session.started_at,
            ended_at=session.ended_at,
        )
