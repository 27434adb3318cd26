# repositories/base_repository.py
import logging
from typing import Any, TypeVar, Generic, Type, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from db.models import HasId

T = TypeVar("T", bound=HasId)

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    def __init__(self, db: AsyncSession, model: Type[T]):
        self.db = db
        self.model = model

    async def get_by_id(self, obj_id: Any) -> Optional[T]:
        async with self.db.begin():
            result = await self.db.execute(select(self.model).where(self.model.id == obj_id))
            return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[T]:
        async with self.db.begin():
            result = await self.db.execute(select(self.model))
            return result.scalars().all()

    async def create(self, obj: T) -> T:
        try:
            async with self.db.begin():
                self.db.add(obj)
                await self.db.flush()
            return obj
        except SQLAlchemyError:
            logger.exception("Failed to create %s", self.model.__name__)
            raise

    async def delete(self, obj: T) -> None:
        async with self.db.begin():
            await self.db.delete(obj)
