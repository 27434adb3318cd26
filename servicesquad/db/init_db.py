import asyncio
import logging
import sys
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from db.models import Base
from db.db import async_engine

logger = logging.getLogger(__name__)


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized.")


async def drop_db(engine: Optional[AsyncEngine] = None) -> None:
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(init_db())
    except Exception:
        logger.exception("Error initializing database")
        sys.exit(1)
