"""AccountApplicationService — read side of the ledger.

get_balance lazily creates the account, so it commits; list_ledger is
read-only and runs without an explicit transaction.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.application.schemas import (
    BalanceResponse,
    LedgerEntryItem,
    LedgerResponse,
    cursor_decode,
    cursor_encode,
)
from src.cl_account.domain.repository import LedgerRepositoryProtocol
from src.cl_account.infrastructure.persistence import LedgerRepository
from src.cl_common.micros import micros_to_display


class AccountApplicationService:
    def __init__(self, repo: LedgerRepositoryProtocol | None = None) -> None:
        self._repo: LedgerRepositoryProtocol = repo or LedgerRepository()

    async def get_balance(self, db: AsyncSession, user_id: str) -> BalanceResponse:
        try:
            account = await self._repo.get_or_create_account(db, user_id)
            held = await self._repo.get_open_holds_total(db, account.id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return BalanceResponse.from_micros(
            user_id=user_id,
            account_id=account.id,
            balance=account.balance_microcredits,
            held=held,
        )

    async def list_ledger(
        self,
        db: AsyncSession,
        user_id: str,
        cursor: str | None,
        limit: int,
        entry_type: str | None,
    ) -> LedgerResponse:
        try:
            account = await self._repo.get_or_create_account(db, user_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        cursor_id = cursor_decode(cursor)
        # Fetch limit+1 to detect has_more without a COUNT(*) query
        entries = await self._repo.list_ledger_entries(
            db, account.id, cursor_id, limit + 1, entry_type
        )
        has_more = len(entries) > limit
        page = entries[:limit]

        items = [
            LedgerEntryItem(
                id=e.id,
                entry_type=e.entry_type,
                amount_microcredits=e.amount,
                amount_display=micros_to_display(e.amount),
                balance_after_microcredits=e.balance_after,
                balance_after_display=micros_to_display(e.balance_after),
                reference_type=e.reference_type,
                reference_id=e.reference_id,
                description=e.description,
                created_at=e.created_at.isoformat() if e.created_at else "",
            )
            for e in page
        ]

        next_cursor = cursor_encode(page[-1].id) if has_more and page else None
        return LedgerResponse(items=items, next_cursor=next_cursor, has_more=has_more)
