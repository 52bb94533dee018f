from collections.abc import AsyncGenerator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config.settings import settings

# SQLSTATEs raised when migrations have not been applied
_SCHEMA_MISSING_SQLSTATES = frozenset({"42P01", "42883"})  # undefined_table, undefined_function
_UNIQUE_VIOLATION = "23505"

engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_size=20,
    max_overflow=10,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields an AsyncSession, auto-closes after request."""
    async with async_session_factory() as session:
        yield session


def _sqlstate(exc: BaseException) -> str | None:
    if not isinstance(exc, DBAPIError):
        return None
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is None:
        # asyncpg errors are wrapped; the driver error sits on __cause__
        sqlstate = getattr(getattr(orig, "__cause__", None), "sqlstate", None)
    return sqlstate


def is_schema_missing(exc: BaseException) -> bool:
    """True if a DB error means the ledger tables/functions do not exist."""
    return _sqlstate(exc) in _SCHEMA_MISSING_SQLSTATES


def is_unique_violation(exc: BaseException) -> bool:
    return _sqlstate(exc) == _UNIQUE_VIOLATION
