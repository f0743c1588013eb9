import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from wishlisty.core.config import settings
from wishlisty.core.errors import PersistenceError


logger = logging.getLogger("wishlisty.db")


def _is_postgres() -> bool:
    return "postgresql" in settings.postgres_dsn.lower()


if _is_postgres():
    engine = create_async_engine(
        settings.postgres_dsn,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_timeout=settings.db_pool_timeout,
    )
else:
    engine = create_async_engine(
        settings.postgres_dsn,
        echo=False,
        future=True,
        pool_pre_ping=True,
    )


class Base(DeclarativeBase):
    pass


async_session_factory = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    action: str,
) -> AsyncIterator[AsyncSession]:
    """One session, one transaction. Store failures surface as PersistenceError."""
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", action)
        raise PersistenceError(f"Store failure during {action}") from exc
