from typing import Sequence, Optional
from uuid import UUID
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from db.models import Notification
from db.repositories.base_repository import BaseRepository
from utils.utils import utcnow
import logging

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository[Notification]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, Notification)

    async def create(self, obj: Notification) -> Notification:
        async with self.db.begin():
            self.db.add(obj)
            await self.db.flush()  # assigns id and message_send_id
            await self.db.refresh(obj)
            return obj

    async def get_by_message_send_id(self, message_send_id: UUID) -> Optional[Notification]:
        try:
            async with self.db.begin():
                stmt = select(Notification).where(Notification.message_send_id == message_send_id)
                result = await self.db.execute(stmt)
                return result.scalar_one_or_none()
        except SQLAlchemyError:
            logger.exception("Error while fetching notification %s", message_send_id)
            raise

    async def list_by_user_id(self, user_id: str, unread_only: bool = False) -> Sequence[Notification]:
        async with self.db.begin():
            stmt = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                stmt = stmt.where(Notification.is_read.is_(False))
            stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            result = await self.db.execute(stmt)
            return result.scalars().all()

    async def list_by_booking_id(self, booking_id: int) -> Sequence[Notification]:
        async with self.db.begin():
            stmt = select(Notification).where(Notification.booking_id == booking_id).order_by(Notification.id)
            result = await self.db.execute(stmt)
            return result.scalars().all()

    async def mark_dispatched(self, message_send_id: UUID) -> bool:
        async with self.db.begin():
            stmt = (
                update(Notification)
                .where(Notification.message_send_id == message_send_id, Notification.dispatched_at.is_(None))
                .values(dispatched_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            return result.rowcount > 0

    async def mark_read(self, notification_id: int) -> bool:
        async with self.db.begin():
            stmt = (
                update(Notification)
                .where(Notification.id == notification_id)
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            return result.rowcount > 0
