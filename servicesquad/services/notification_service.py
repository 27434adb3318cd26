import logging
from typing import Any, Dict, Optional, Sequence, Tuple
from uuid import UUID

from db.db import SessionFactory, get_async_session
from db.models import Notification
from db.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking_created"
BOOKING_ACCEPTED = "booking_accepted"
BOOKING_REJECTED = "booking_rejected"
BOOKING_ON_THE_WAY = "booking_on_the_way"
BOOKING_STARTED = "booking_started"
BOOKING_COMPLETED = "booking_completed"
BOOKING_CANCELLED = "booking_cancelled"
PROVIDER_ARRIVED = "provider_arrived"

# kind -> (title, body); body receives actor, service and an optional ": reason" suffix
MESSAGES: Dict[str, Tuple[str, str]] = {
    BOOKING_CREATED: ("New Booking Request! 📅", "{actor} requested {service}"),
    BOOKING_ACCEPTED: ("Booking Accepted! 🎉", "{actor} has accepted your booking for {service}"),
    BOOKING_REJECTED: ("Booking Rejected", "{actor} has rejected your booking for {service}{reason}"),
    BOOKING_ON_THE_WAY: ("Provider On The Way! 🚗", "{actor} is on the way for {service}"),
    BOOKING_STARTED: ("Service Started", "{actor} has started {service}"),
    BOOKING_COMPLETED: ("Service Completed! ✅", "{actor} has completed {service}. Please rate your experience."),
    BOOKING_CANCELLED: ("Booking Cancelled", "{actor} cancelled the booking for {service}{reason}"),
    PROVIDER_ARRIVED: ("Provider Arrived 📍", "{actor} has arrived for {service}"),
}


def render_message(kind: str, actor: str, service: str, reason: Optional[str] = None) -> Tuple[str, str]:
    title, body = MESSAGES[kind]
    suffix = f": {reason}" if reason else ""
    return title, body.format(actor=actor or "Someone", service=service or "your service", reason=suffix)


class NotificationService:
    """Records notifications and hands them to the worker for delivery."""

    def __init__(self, session_factory: SessionFactory = get_async_session):
        self._session_factory = session_factory

    async def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        booking_id: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        from jobs.worker import dispatch_notification_task  # Lazy import to break circular import dependency

        notification = Notification(
            user_id=user_id,
            booking_id=booking_id,
            kind=kind,
            title=title,
            body=body,
            data={"type": kind, **({"booking_id": booking_id} if booking_id is not None else {}), **(data or {})},
        )
        async with self._session_factory() as session:
            notification = await NotificationRepository(session).create(notification)

        try:
            await dispatch_notification_task.kiq(str(notification.message_send_id))
        except Exception:
            # the row is kept; delivery can be retried from it
            logger.exception("Failed to enqueue notification %s", notification.message_send_id)
        return notification

    async def dispatch(self, message_send_id: str) -> bool:
        """Mark a notification as handed to the push channel. False when unknown or already dispatched."""
        async with self._session_factory() as session:
            dispatched = await NotificationRepository(session).mark_dispatched(UUID(str(message_send_id)))
        if dispatched:
            logger.info("Notification %s dispatched", message_send_id)
        else:
            logger.warning("Notification %s not found or already dispatched", message_send_id)
        return dispatched

    async def get_notification(self, message_send_id: str) -> Optional[Notification]:
        async with self._session_factory() as session:
            return await NotificationRepository(session).get_by_message_send_id(UUID(str(message_send_id)))

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> Sequence[Notification]:
        async with self._session_factory() as session:
            return await NotificationRepository(session).list_by_user_id(user_id, unread_only=unread_only)

    async def list_for_booking(self, booking_id: int) -> Sequence[Notification]:
        async with self._session_factory() as session:
            return await NotificationRepository(session).list_by_booking_id(booking_id)

    async def mark_read(self, notification_id: int) -> bool:
        async with self._session_factory() as session:
            return await NotificationRepository(session).mark_read(notification_id)
