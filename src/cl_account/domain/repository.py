"""Repository Protocols — dependency inversion for testability.

Unit tests inject a mock or in-memory fake that conforms to these Protocols.
Infrastructure layer provides the real implementations.

Every mutating method is a conditional statement set executed inside the
caller's transaction; a rejected guard either raises a typed AppError or
returns None, never leaves partial state once the caller rolls back.
"""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.domain.models import Account, CreditHold, LedgerEntry


class LedgerRepositoryProtocol(Protocol):
    async def get_or_create_account(self, db: AsyncSession, user_id: str) -> Account: ...

    async def get_account(self, db: AsyncSession, account_id: str) -> Account | None: ...

    async def get_open_holds_total(self, db: AsyncSession, account_id: str) -> int: ...

    async def create_hold(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        idempotency_key: str,
        factor_micros: int,
    ) -> CreditHold:
        """Raises DuplicateHoldError or InsufficientCreditsError."""
        ...

    async def get_hold(
        self, db: AsyncSession, hold_id: str, for_update: bool = False
    ) -> CreditHold | None: ...

    async def increase_hold(
        self, db: AsyncSession, hold: CreditHold, additional: int
    ) -> CreditHold:
        """Raises InsufficientCreditsError or HoldNotOpenError."""
        ...

    async def capture_hold(
        self, db: AsyncSession, hold: CreditHold, capture_amount: int, written_off: int
    ) -> CreditHold | None:
        """None when the hold is no longer open."""
        ...

    async def release_hold(self, db: AsyncSession, hold: CreditHold) -> CreditHold | None:
        """None when the hold is no longer open."""
        ...

    async def credit_account(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        entry_type: str,
        ref_type: str,
        ref_id: str,
        description: str,
    ) -> Account: ...

    async def list_ledger_entries(
        self,
        db: AsyncSession,
        account_id: str,
        cursor_id: int | None,
        limit: int,
        entry_type: str | None,
    ) -> list[LedgerEntry]: ...


class SettingsRepositoryProtocol(Protocol):
    async def get_value_text(self, db: AsyncSession, key: str) -> str | None: ...
