from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from query_agent.core.settings import settings

MOCK_DATABASE_URL = "sqlite+aiosqlite://"


def create_store_engine(url: str) -> AsyncEngine:
    """Engine for the real analytical store (MySQL through aiomysql)."""
    return create_async_engine(
        url,
        echo=settings.log_level == "DEBUG",
        pool_size=settings.db.pool_size,
        max_overflow=settings.db.max_overflow,
        pool_pre_ping=True,
    )


def create_mock_engine() -> AsyncEngine:
    # One shared in-memory connection, otherwise every checkout sees an empty database
    return create_async_engine(
        MOCK_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
