import logging
from datetime import date, datetime
from typing import Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from db.db import SessionFactory, get_async_session
from db.models import Booking, BookingStatus
from db.repositories.booking_repository import BookingRepository
from db.repositories.provider_repository import ProviderRepository
from dtos.dtos import BookingCounts, BookingCreate, BookingEvent, BookingOut, is_canonical_slot
from services.availability_service import AvailabilityService
from services.exceptions import Conflict, InputRejected, InvalidTransition, NotFound
from services.interfaces import Notifier
from services import notification_service as messages
from utils.locks import KeyedLock
from utils.streams import Broadcaster, Subscription
from utils.utils import to_date, utcnow

logger = logging.getLogger(__name__)

S = BookingStatus

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    S.pending: frozenset({S.accepted, S.rejected, S.cancelled}),
    S.accepted: frozenset({S.on_the_way, S.cancelled}),
    # confirmed is never entered by a transition here but may exist in stored data
    S.confirmed: frozenset({S.on_the_way, S.cancelled}),
    S.on_the_way: frozenset({S.in_progress}),
    S.in_progress: frozenset({S.completed}),
    S.completed: frozenset(),
    S.cancelled: frozenset(),
    S.rejected: frozenset(),
}

RESCHEDULABLE = frozenset({S.pending, S.accepted, S.confirmed})
CANCELLERS = ("customer", "provider")
EVENT_SCOPES = ("booking", "customer", "provider")

TransitionListener = Callable[[BookingEvent], Awaitable[None]]


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _require_reason(reason: Optional[str]) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise InputRejected("A reason is required", code="REASON_REQUIRED")
    return cleaned


class BookingService:
    """
    Booking lifecycle. Every status change goes through :meth:`_transition`:
    the move is checked against ``TRANSITIONS``, serialised per booking and
    written with a compare-and-set on the previous status. Notifications,
    the provider's completed-jobs counter, listeners and event subscribers
    are then served best-effort.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_async_session,
        availability: Optional[AvailabilityService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._availability = availability or AvailabilityService(session_factory)
        self._notifier = notifier
        self._clock = clock
        self._locks = KeyedLock()
        self._events: Broadcaster[BookingEvent] = Broadcaster()
        self._listeners: List[TransitionListener] = []

    # ---- listeners and subscriptions ----

    def add_transition_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def remove_transition_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, scope: str, key: Union[int, str]) -> Subscription[BookingEvent]:
        """Stream of BookingEvents for one booking, customer or provider."""
        if scope not in EVENT_SCOPES:
            raise InputRejected(f"Unknown subscription scope: {scope}")
        return self._events.subscribe((scope, str(key)))

    async def aclose(self) -> None:
        self._events.close_all()

    # ---- queries ----

    async def get_booking(self, booking_id: int) -> Booking:
        async with self._session_factory() as session:
            booking = await BookingRepository(session).get_by_id(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def list_customer_bookings(
        self, customer_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> Sequence[Booking]:
        async with self._session_factory() as session:
            return await BookingRepository(session).list_for_customer(customer_id, statuses)

    async def list_provider_bookings(
        self, provider_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> Sequence[Booking]:
        async with self._session_factory() as session:
            return await BookingRepository(session).list_for_provider(provider_id, statuses)

    async def count_customer_bookings(self, customer_id: str, statuses: Optional[Iterable[BookingStatus]] = None) -> BookingCounts:
        return await self._count("customer", customer_id, statuses)

    async def count_provider_bookings(self, provider_id: str, statuses: Optional[Iterable[BookingStatus]] = None) -> BookingCounts:
        return await self._count("provider", provider_id, statuses)

    async def _count(self, role: str, owner_id: str, statuses: Optional[Iterable[BookingStatus]]) -> BookingCounts:
        wanted = list(dict.fromkeys(statuses)) if statuses else list(BookingStatus)
        by_status: Dict[str, int] = {}
        async with self._session_factory() as session:
            repo = BookingRepository(session)
            for status in wanted:
                by_status[status.value] = await repo.count_for(role, owner_id, status)
        return BookingCounts(total=sum(by_status.values()), by_status=by_status)

    # ---- creation ----

    async def create_booking(self, data: BookingCreate) -> Booking:
        if not is_canonical_slot(data.scheduled_slot):
            raise InputRejected(f"Unknown time slot: {data.scheduled_slot}", code="INVALID_SLOT")

        slot_key = ("slot", data.provider_id, data.scheduled_date.isoformat(), data.scheduled_slot)
        async with self._locks.hold(slot_key):
            check = await self._availability.is_slot_available(data.provider_id, data.scheduled_date, data.scheduled_slot)
            if not check.is_available:
                raise InputRejected(check.reason or "This time slot is not available", code="SLOT_UNAVAILABLE")

            now = self._clock()
            booking = Booking(
                customer_id=data.customer_id,
                customer_name=data.customer_name,
                provider_id=data.provider_id,
                provider_name=data.provider_name,
                service_id=data.service_id,
                service_name=data.service_name,
                status=BookingStatus.pending,
                scheduled_date=data.scheduled_date,
                scheduled_slot=data.scheduled_slot,
                price=data.price,
                notes=data.notes,
                created_at=now,
                updated_at=now,
                **data.address.model_dump(),
            )
            async with self._session_factory() as session:
                booking = await BookingRepository(session).create(booking)

        logger.info("Booking %s created for provider %s on %s %s",
                    booking.id, booking.provider_id, booking.scheduled_date, booking.scheduled_slot)
        await self._notify(booking, booking.provider_id, messages.BOOKING_CREATED, booking.customer_name)
        await self._emit(booking, None)
        return booking

    # ---- transitions ----

    async def accept(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, S.accepted)

    async def reject(self, booking_id: int, reason: str) -> Booking:
        return await self._transition(booking_id, S.rejected, reason=_require_reason(reason))

    async def mark_on_the_way(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, S.on_the_way)

    async def start_service(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, S.in_progress)

    async def complete(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, S.completed)

    async def cancel(self, booking_id: int, reason: str, cancelled_by: str) -> Booking:
        cleaned = _require_reason(reason)
        if cancelled_by not in CANCELLERS:
            raise InputRejected("cancelled_by must be 'customer' or 'provider'", code="INVALID_ACTOR")
        return await self._transition(booking_id, S.cancelled, reason=cleaned, cancelled_by=cancelled_by)

    async def _transition(
        self,
        booking_id: int,
        target: BookingStatus,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> Booking:
        async with self._locks.hold(booking_id):
            booking = await self.get_booking(booking_id)
            previous = booking.status
            if not can_transition(previous, target):
                raise InvalidTransition(
                    f"Cannot move booking {booking_id} from {previous.value} to {target.value}"
                )

            values = {}
            if target in (S.cancelled, S.rejected):
                values["cancellation_reason"] = reason
            if target == S.completed:
                values["completed_at"] = self._clock()

            async with self._session_factory() as session:
                updated = await BookingRepository(session).compare_and_set_status(booking_id, previous, target, **values)
            if updated is None:
                raise Conflict(f"Booking {booking_id} was changed by another request", code="STALE_STATUS")

        logger.info("Booking %s: %s -> %s", booking_id, previous.value, target.value)
        await self._after_transition(updated, previous, reason, cancelled_by)
        return updated

    async def _after_transition(
        self,
        booking: Booking,
        previous: BookingStatus,
        reason: Optional[str],
        cancelled_by: Optional[str],
    ) -> None:
        status = booking.status
        if status == S.cancelled and cancelled_by == "customer":
            await self._notify(booking, booking.provider_id, messages.BOOKING_CANCELLED, booking.customer_name, reason)
        elif status == S.cancelled:
            await self._notify(booking, booking.customer_id, messages.BOOKING_CANCELLED, booking.provider_name, reason)
        else:
            kind = {
                S.accepted: messages.BOOKING_ACCEPTED,
                S.rejected: messages.BOOKING_REJECTED,
                S.on_the_way: messages.BOOKING_ON_THE_WAY,
                S.in_progress: messages.BOOKING_STARTED,
                S.completed: messages.BOOKING_COMPLETED,
            }[status]
            await self._notify(booking, booking.customer_id, kind, booking.provider_name, reason)

        if status == S.completed:
            await self._increment_completed_jobs(booking)

        await self._emit(booking, previous)

    # ---- reschedule and purge ----

    async def reschedule(self, booking_id: int, new_date: Union[date, str], new_slot: str) -> Booking:
        new_date = to_date(new_date)
        if not is_canonical_slot(new_slot):
            raise InputRejected(f"Unknown time slot: {new_slot}", code="INVALID_SLOT")

        async with self._locks.hold(booking_id):
            booking = await self.get_booking(booking_id)
            if booking.status not in RESCHEDULABLE:
                raise InvalidTransition(f"Cannot reschedule a booking that is {booking.status.value}")
            if booking.scheduled_date == new_date and booking.scheduled_slot == new_slot:
                return booking

            check = await self._availability.is_slot_available(booking.provider_id, new_date, new_slot)
            if not check.is_available:
                raise InputRejected(check.reason or "This time slot is not available", code="SLOT_UNAVAILABLE")

            async with self._session_factory() as session:
                updated = await BookingRepository(session).reschedule(booking_id, booking.status, new_date, new_slot)
            if updated is None:
                raise Conflict(f"Booking {booking_id} was changed by another request", code="STALE_STATUS")

        logger.info("Booking %s rescheduled to %s %s", booking_id, new_date, new_slot)
        await self._emit(updated, updated.status)
        return updated

    async def purge_booking(self, booking_id: int) -> None:
        """Administrative hard delete. Live subscriptions to the booking are closed."""
        async with self._locks.hold(booking_id):
            async with self._session_factory() as session:
                deleted = await BookingRepository(session).delete_by_id(booking_id)
        if not deleted:
            raise NotFound(f"Booking {booking_id} not found")
        self._events.close_key(("booking", str(booking_id)))
        logger.info("Booking %s purged", booking_id)

    # ---- side effects ----

    async def _notify(
        self,
        booking: Booking,
        recipient: str,
        kind: str,
        actor: str,
        reason: Optional[str] = None,
    ) -> None:
        if self._notifier is None:
            return
        title, body = messages.render_message(kind, actor, booking.service_name, reason)
        data = {"reason": reason} if reason else None
        try:
            await self._notifier.notify(recipient, kind, title, body, booking_id=booking.id, data=data)
        except Exception:
            logger.exception("Failed to notify %s about booking %s (%s)", recipient, booking.id, kind)

    async def _increment_completed_jobs(self, booking: Booking) -> None:
        try:
            async with self._session_factory() as session:
                await ProviderRepository(session).increment_completed_jobs(booking.provider_id, booking.provider_name)
        except Exception:
            logger.exception("Failed to bump completed jobs for provider %s", booking.provider_id)

    async def _emit(self, booking: Booking, previous: Optional[BookingStatus]) -> None:
        event = BookingEvent(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            previous_status=previous,
            status=booking.status,
            occurred_at=self._clock(),
            booking=BookingOut.model_validate(booking),
        )
        for scope, key in (("booking", booking.id), ("customer", booking.customer_id), ("provider", booking.provider_id)):
            self._events.publish((scope, str(key)), event)

        if previous == booking.status:
            return
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Transition listener failed for booking %s", booking.id)
