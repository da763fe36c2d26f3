"""
Async database engine, session factory and request-scoped session dependency.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _engine_options(database_url: str) -> Dict[str, Any]:
    timeout = max(float(settings.DB_TIMEOUT_SECONDS), 1.0)
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout}}
    options: Dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_timeout": timeout,
    }
    if "+asyncpg" in database_url:
        # Bounded connect and per-statement time for every query.
        options["connect_args"] = {"timeout": timeout, "command_timeout": timeout}
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request."""
    async with async_session_maker() as session:
        yield session
