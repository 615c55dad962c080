"""
Async database engine, declarative base and session dependency.
"""

import asyncio
from typing import Any, AsyncGenerator, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


# Raised by the store when it is down or too slow; asyncpg surfaces command
# timeouts as asyncio.TimeoutError rather than a DBAPI error.
STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def engine_options(database_url: str, timeout_seconds: float) -> Dict[str, Any]:
    """Driver-specific bounds on connect and statement time."""
    timeout = float(timeout_seconds)
    driver = make_url(database_url).get_driver_name()
    if driver == "asyncpg":
        return {
            "pool_timeout": timeout,
            "connect_args": {"timeout": timeout, "command_timeout": timeout},
        }
    if driver == "aiosqlite":
        # sqlite3 busy timeout: how long a writer waits on a locked database.
        return {"connect_args": {"timeout": timeout}}
    return {"pool_timeout": timeout}


engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    **engine_options(settings.DATABASE_URL, settings.DATABASE_TIMEOUT_SECONDS),
)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped database session."""
    async with async_session_maker() as session:
        yield session
