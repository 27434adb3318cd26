from typing import AsyncGenerator, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager

from config.conf import settings

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        # a single shared connection so an in-memory database survives between sessions
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    factory = async_sessionmaker(
        bind=engine,
        expire_on_commit=False,  # Keeps objects usable after commit
        autoflush=False,
        class_=AsyncSession
    )

    @asynccontextmanager
    async def session_scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            yield session

    return session_scope


# Async engine with pooling
async_engine = create_engine_for(settings.resolved_database_url(), echo=settings.database_echo)

get_async_session = make_session_factory(async_engine)
