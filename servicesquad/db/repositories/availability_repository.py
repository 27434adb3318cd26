import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ProviderAvailability

logger = logging.getLogger(__name__)


class AvailabilityRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, provider_id: str) -> Optional[ProviderAvailability]:
        async with self.db.begin():
            result = await self.db.execute(
                select(ProviderAvailability).where(ProviderAvailability.provider_id == provider_id)
            )
            return result.scalar_one_or_none()

    async def create_if_missing(self, record: ProviderAvailability) -> ProviderAvailability:
        try:
            async with self.db.begin():
                self.db.add(record)
            return record
        except IntegrityError:
            # another request created it first
            logger.info("Availability for provider %s already exists", record.provider_id)
            existing = await self.get(record.provider_id)
            if existing is None:
                raise
            return existing

    async def save(self, record: ProviderAvailability) -> ProviderAvailability:
        async with self.db.begin():
            merged = await self.db.merge(record)
        return merged
