import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Provider
from db.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ProviderRepository(BaseRepository[Provider]):
    def __init__(self, db: AsyncSession):
        super().__init__(db, Provider)

    async def increment_completed_jobs(self, provider_id: str, name: str = "") -> int:
        """Add one completed job, creating the provider row on first completion."""
        async with self.db.begin():
            result = await self.db.execute(
                update(Provider)
                .where(Provider.id == provider_id)
                .values(completed_jobs=Provider.completed_jobs + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.add(Provider(id=provider_id, name=name, completed_jobs=1))
                return 1
        provider = await self.get_by_id(provider_id)
        return provider.completed_jobs if provider else 0
