"""Bookable one-hour slots for a provider on a given date.

The checks run in a fixed order and stop at the first failure:
past date, advance-booking window, schedule (custom record or the
built-in default), then the slots already held by live bookings and,
for today, the slots whose start time has passed.
"""

import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Union

from config.conf import settings
from db.db import SessionFactory, get_async_session
from db.models import NON_TERMINAL_STATUSES, ProviderAvailability
from db.repositories.availability_repository import AvailabilityRepository
from db.repositories.booking_repository import BookingRepository
from dtos.dtos import (
    AvailabilityCheckResult,
    AvailabilityUpdate,
    WeeklySchedule,
    day_name,
    slot_label,
    slot_start,
)
from utils.utils import to_date

logger = logging.getLogger(__name__)

# used when a provider never saved a schedule
DEFAULT_FALLBACK_SLOTS = tuple(slot_label(h) for h in range(9, 18))
DEFAULT_FALLBACK_CLOSED_DAYS = frozenset({"sunday"})
DEFAULT_SCHEDULE_NOTE = "Using default availability (provider hasn't set custom schedule)"


def _fail(reason: str) -> AvailabilityCheckResult:
    return AvailabilityCheckResult(is_available=False, slots=[], reason=reason)


class AvailabilityService:

    def __init__(
        self,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = datetime.now,
        default_advance_days: int = settings.default_advance_booking_days,
        default_booking_buffer: int = settings.default_booking_buffer_minutes,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._default_advance_days = default_advance_days
        self._default_booking_buffer = default_booking_buffer

    async def get_available_slots(self, provider_id: str, day: Union[date, datetime, str]) -> AvailabilityCheckResult:
        day = to_date(day)
        now = self._clock()
        today = now.date()

        if day < today:
            return _fail("Cannot book for past dates")

        async with self._session_factory() as session:
            record = await AvailabilityRepository(session).get(provider_id)

        advance_days = record.advance_booking_days if record else self._default_advance_days
        if (day - today).days > advance_days:
            return _fail(f"Bookings are only available {advance_days} days in advance")

        weekday = day_name(day)
        note: Optional[str] = None

        if record is None:
            if weekday in DEFAULT_FALLBACK_CLOSED_DAYS:
                return _fail("Provider is not available on this day (default schedule)")
            logger.debug("Provider %s has no availability record, using the default schedule", provider_id)
            slots = list(DEFAULT_FALLBACK_SLOTS)
            note = DEFAULT_SCHEDULE_NOTE
        else:
            if not record.is_accepting_bookings:
                return _fail("Provider is not accepting bookings")
            if day.isoformat() in (record.custom_days_off or []):
                return _fail("Provider is not available on this date")
            day_schedule = WeeklySchedule.model_validate(record.weekly_schedule).for_day(weekday)
            if not day_schedule.is_available or not day_schedule.slots:
                return _fail(f"Provider is not available on {weekday}s")
            slots = list(day_schedule.slots)

        slots = await self._subtract_booked(provider_id, day, slots)

        if day == today:
            current = now.time().replace(second=0, microsecond=0)
            slots = [s for s in slots if slot_start(s) > current]

        if not slots:
            return _fail("No available slots for this date")

        return AvailabilityCheckResult(is_available=True, slots=slots, reason=note)

    async def is_slot_available(self, provider_id: str, day: Union[date, str], slot: str) -> AvailabilityCheckResult:
        result = await self.get_available_slots(provider_id, day)
        if slot in result.slots:
            return result
        # an open day only carries an informational note, not a rejection reason
        return _fail(result.reason if not result.is_available else "This time slot is not available")

    async def _subtract_booked(self, provider_id: str, day: date, slots: List[str]) -> List[str]:
        async with self._session_factory() as session:
            bookings = await BookingRepository(session).list_for_provider_on(provider_id, day, NON_TERMINAL_STATUSES)
        taken = {b.scheduled_slot for b in bookings}
        return [s for s in slots if s not in taken]

    # ---- provider-side management ----

    async def get_availability(self, provider_id: str) -> Optional[ProviderAvailability]:
        async with self._session_factory() as session:
            return await AvailabilityRepository(session).get(provider_id)

    async def get_or_create_availability(self, provider_id: str) -> ProviderAvailability:
        async with self._session_factory() as session:
            repo = AvailabilityRepository(session)
            record = await repo.get(provider_id)
            if record is not None:
                return record
            logger.info("Creating default availability for provider %s", provider_id)
            return await repo.create_if_missing(self._default_record(provider_id))

    async def update_availability(self, provider_id: str, changes: AvailabilityUpdate) -> ProviderAvailability:
        record = await self.get_or_create_availability(provider_id)
        if changes.weekly_schedule is not None:
            record.weekly_schedule = changes.weekly_schedule.model_dump()
        if changes.custom_days_off is not None:
            record.custom_days_off = sorted({d.isoformat() for d in changes.custom_days_off})
        if changes.booking_buffer is not None:
            record.booking_buffer = changes.booking_buffer
        if changes.advance_booking_days is not None:
            record.advance_booking_days = changes.advance_booking_days
        if changes.is_accepting_bookings is not None:
            record.is_accepting_bookings = changes.is_accepting_bookings
        return await self._save(record)

    async def add_custom_day_off(self, provider_id: str, day: Union[date, str]) -> ProviderAvailability:
        record = await self.get_or_create_availability(provider_id)
        days_off = set(record.custom_days_off or [])
        days_off.add(to_date(day).isoformat())
        record.custom_days_off = sorted(days_off)
        return await self._save(record)

    async def remove_custom_day_off(self, provider_id: str, day: Union[date, str]) -> ProviderAvailability:
        record = await self.get_or_create_availability(provider_id)
        iso = to_date(day).isoformat()
        record.custom_days_off = [d for d in (record.custom_days_off or []) if d != iso]
        return await self._save(record)

    async def _save(self, record: ProviderAvailability) -> ProviderAvailability:
        async with self._session_factory() as session:
            return await AvailabilityRepository(session).save(record)

    def _default_record(self, provider_id: str) -> ProviderAvailability:
        return ProviderAvailability(
            provider_id=provider_id,
            weekly_schedule=WeeklySchedule().model_dump(),
            custom_days_off=[],
            booking_buffer=self._default_booking_buffer,
            advance_booking_days=self._default_advance_days,
            is_accepting_bookings=True,
        )
