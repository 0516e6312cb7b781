"""Async database connection using SQLAlchemy (supports SQLite and PostgreSQL)."""

import asyncio
import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from matchdata.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def to_async_url(url: str) -> str:
    """Convert a database URL to its async driver form."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine with per-backend pool settings.

    SQLite gets a StaticPool so an in-memory database survives across
    sessions (tests rely on this). PostgreSQL gets a pre-pinged pool with
    a statement timeout so a stuck sync cannot hog connections.
    """
    async_url = to_async_url(url)
    engine_kwargs = {"echo": echo}

    if async_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_recycle"] = 300
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": "60000"}  # ms
        }

    return create_async_engine(async_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    """Session factory bound to an engine (expire_on_commit off for background jobs)."""
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = build_session_factory(async_engine)


async def init_db(engine: AsyncEngine = None) -> None:
    """Create all tables."""
    engine = engine or async_engine
    logger.info("Initializing database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created successfully.")


async def close_db(engine: AsyncEngine = None) -> None:
    """Dispose of pooled connections."""
    engine = engine or async_engine
    logger.info("Closing database connections...")
    await engine.dispose()


@asynccontextmanager
async def get_session_with_retry(
    session_factory: sessionmaker = None,
    max_retries: int = 3,
    retry_delay: float = 1.0,
):
    """
    Provide a session, retrying only while the connection is being opened.

    Scheduled jobs may wake up after a database restart and find stale
    connections in the pool. Failures after the session was yielded
    propagate to the caller.
    """
    factory = session_factory or AsyncSessionLocal
    current_delay = retry_delay
    session = None

    for attempt in range(max_retries):
        session = factory()
        try:
            await session.connection()
            break
        except (InterfaceError, OperationalError) as e:
            await session.close()
            session = None
            if attempt == max_retries - 1:
                raise
            logger.warning(
                f"Database connection error (attempt {attempt + 1}/{max_retries}): {e}. "
                f"Retrying in {current_delay}s..."
            )
            await asyncio.sleep(current_delay)
            current_delay *= 2
        except BaseException:
            # Anything else (including cancellation) is not retried
            await session.close()
            raise

    try:
        yield session
    finally:
        await session.close()
