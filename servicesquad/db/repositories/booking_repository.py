import logging
from datetime import date
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Booking, BookingStatus
from db.repositories.base_repository import BaseRepository
from services.exceptions import Conflict
from utils.utils import utcnow

logger = logging.getLogger(__name__)

SLOT_TAKEN = "This time slot is no longer available"


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, Booking)

    async def create(self, booking: Booking) -> Booking:
        try:
            return await super().create(booking)
        except IntegrityError as error:
            # partial unique index on the provider slot
            raise Conflict(SLOT_TAKEN, code="SLOT_TAKEN") from error

    async def compare_and_set_status(
        self,
        booking_id: int,
        expected: BookingStatus,
        new_status: BookingStatus,
        **values: Any,
    ) -> Optional[Booking]:
        """Move ``booking_id`` from ``expected`` to ``new_status`` in one UPDATE.

        Returns the refreshed booking, or None when the row was not in ``expected``
        any more (or does not exist); nothing is written in that case.
        """
        try:
            async with self.db.begin():
                stmt = (
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == expected)
                    .values(status=new_status, updated_at=utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
                result = await self.db.execute(stmt)
                if result.rowcount != 1:
                    return None
                fetched = await self.db.execute(
                    select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
                )
                return fetched.scalar_one()
        except SQLAlchemyError:
            logger.exception("Status update failed for booking %s", booking_id)
            raise

    async def reschedule(
        self,
        booking_id: int,
        expected: BookingStatus,
        scheduled_date: date,
        scheduled_slot: str,
    ) -> Optional[Booking]:
        try:
            async with self.db.begin():
                stmt = (
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == expected)
                    .values(scheduled_date=scheduled_date, scheduled_slot=scheduled_slot, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                result = await self.db.execute(stmt)
                if result.rowcount != 1:
                    return None
                fetched = await self.db.execute(
                    select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
                )
                return fetched.scalar_one()
        except IntegrityError as error:
            raise Conflict(SLOT_TAKEN, code="SLOT_TAKEN") from error

    async def list_for_provider_on(
        self, provider_id: str, scheduled_date: date, statuses: Iterable[BookingStatus]
    ) -> Sequence[Booking]:
        async with self.db.begin():
            stmt = select(Booking).where(
                Booking.provider_id == provider_id,
                Booking.scheduled_date == scheduled_date,
                Booking.status.in_(list(statuses)),
            )
            result = await self.db.execute(stmt)
            return result.scalars().all()

    async def list_for_customer(
        self, customer_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> Sequence[Booking]:
        return await self._list_by(Booking.customer_id == customer_id, statuses)

    async def list_for_provider(
        self, provider_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> Sequence[Booking]:
        return await self._list_by(Booking.provider_id == provider_id, statuses)

    async def _list_by(self, owner_clause, statuses) -> Sequence[Booking]:
        async with self.db.begin():
            stmt = select(Booking).where(owner_clause)
            if statuses:
                stmt = stmt.where(Booking.status.in_(list(statuses)))
            stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
            result = await self.db.execute(stmt)
            return result.scalars().all()

    async def count_for(self, role: str, owner_id: str, status: BookingStatus) -> int:
        column = Booking.customer_id if role == "customer" else Booking.provider_id
        async with self.db.begin():
            stmt = select(func.count(Booking.id)).where(column == owner_id, Booking.status == status)
            result = await self.db.execute(stmt)
            return int(result.scalar_one())

    async def delete_by_id(self, booking_id: int) -> bool:
        async with self.db.begin():
            result = await self.db.execute(delete(Booking).where(Booking.id == booking_id))
            return result.rowcount > 0
