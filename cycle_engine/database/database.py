import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cycle_engine.config import settings
from cycle_engine.database.models import Base


logger = logging.getLogger(__name__)


def build_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.get_database_url()

    if url.startswith('sqlite'):
        return create_async_engine(url, poolclass=NullPool, connect_args={'check_same_thread': False})

    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info('Database schema ready (%s)', target.url.get_backend_name())


async def close_db() -> None:
    await engine.dispose()
    logger.info('Database connections closed')
