"""Unit-test fixtures: HoldManager over the in-memory ledger."""

from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from src.cl_account.domain.hold_manager import HoldManager
from tests.unit.fakes import FACTOR, InMemoryLedger, StaticSettings


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def holds(ledger: InMemoryLedger) -> HoldManager:
    return HoldManager(
        repo=ledger,
        settings_repo=StaticSettings(),
        overage_policy="write_off",
        fallback_factor_micros=FACTOR,
    )


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def make_holds(ledger: InMemoryLedger) -> Callable[..., HoldManager]:
    def _make(policy: str = "write_off", factor: str | None = str(FACTOR)) -> HoldManager:
        return HoldManager(
            repo=ledger,
            settings_repo=StaticSettings(factor),
            overage_policy=policy,
            fallback_factor_micros=FACTOR,
        )

    return _make
