"""Integration-test fixtures.

Require a migrated PostgreSQL reachable at
INTEGRATION_DATABASE_URL (alembic -x url=$INTEGRATION_DATABASE_URL upgrade head);
every test here is skipped when it is unset.

All integration tests share a single event loop so the session-scoped
engine pool stays valid across the run.
"""

import os
import uuid
from collections.abc import Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.cl_account.infrastructure.persistence import LedgerRepository
from src.cl_common.enums import LedgerEntryType

INTEGRATION_DATABASE_URL = os.environ.get("INTEGRATION_DATABASE_URL")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if INTEGRATION_DATABASE_URL:
        return
    skip = pytest.mark.skip(reason="INTEGRATION_DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest_asyncio.fixture(loop_scope="session", scope="session")
async def engine() -> AsyncEngine:
    eng = create_async_engine(INTEGRATION_DATABASE_URL or "", pool_size=20, max_overflow=10)
    yield eng
    await eng.dispose()


@pytest.fixture(scope="session")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def user_id() -> str:
    """Fresh user per test so runs never see each other's balances."""
    return f"it-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def fund(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str, int], Awaitable[str]]:
    """``await fund(user_id, amount)`` credits microcredits, returns the account id."""

    async def _fund(user_id: str, amount: int) -> str:
        repo = LedgerRepository()
        async with session_factory() as db:
            account = await repo.get_or_create_account(db, user_id)
            await repo.credit_account(
                db,
                account.id,
                amount,
                LedgerEntryType.PAYMENT_CREDIT.value,
                "TEST",
                user_id,
                "integration funding",
            )
            await db.commit()
        return account.id

    return _fund
