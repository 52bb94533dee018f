"""LedgerRepository — concrete implementation of LedgerRepositoryProtocol.

Every balance or hold-status transition is a conditional PostgreSQL
statement with RETURNING. A result of 0 rows means the guard rejected the
transition (insufficient balance, hold no longer open, key already used).

Transaction ownership: the CALLER (HoldManager's caller, application
service or router) commits or rolls back. Nothing here commits.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.domain.models import Account, CreditHold, LedgerEntry
from src.cl_common.enums import HoldStatus, LedgerEntryType
from src.cl_common.errors import (
    AccountNotFoundError,
    DuplicateHoldError,
    HoldNotOpenError,
    InsufficientCreditsError,
    InternalError,
)

_ACCOUNT_COLUMNS = "id, user_id, balance_microcredits, version, created_at, updated_at"

_HOLD_COLUMNS = """id, account_id, amount_microcredits, credit_usd_per_credit_micros_at_hold,
              idempotency_key, status, captured_microcredits, written_off_microcredits,
              increased_at, created_at, resolved_at"""

# ---------------------------------------------------------------------------
# SQL: accounts
# ---------------------------------------------------------------------------

_GET_OR_CREATE_ACCOUNT_SQL = text(f"""
    INSERT INTO accounts (user_id)
    VALUES (:user_id)
    ON CONFLICT (user_id) DO UPDATE
        SET updated_at = NOW()
    RETURNING {_ACCOUNT_COLUMNS}
""")

_GET_ACCOUNT_SQL = text(f"""
    SELECT {_ACCOUNT_COLUMNS}
    FROM accounts
    WHERE id = :account_id
""")

_DEBIT_SQL = text(f"""
    UPDATE accounts
    SET balance_microcredits = balance_microcredits - :amount,
        version = version + 1,
        updated_at = NOW()
    WHERE id = :account_id AND balance_microcredits >= :amount
    RETURNING {_ACCOUNT_COLUMNS}
""")

_CREDIT_SQL = text(f"""
    UPDATE accounts
    SET balance_microcredits = balance_microcredits + :amount,
        version = version + 1,
        updated_at = NOW()
    WHERE id = :account_id
    RETURNING {_ACCOUNT_COLUMNS}
""")

_INSERT_LEDGER_SQL = text("""
    INSERT INTO credit_ledger_entries
        (account_id, entry_type, amount, balance_after,
         reference_type, reference_id, description)
    VALUES
        (:account_id, :entry_type, :amount, :balance_after,
         :reference_type, :reference_id, :description)
    RETURNING id, account_id, entry_type, amount, balance_after,
              reference_type, reference_id, description, created_at
""")

_LIST_LEDGER_SQL = text("""
    SELECT id, account_id, entry_type, amount, balance_after,
           reference_type, reference_id, description, created_at
    FROM credit_ledger_entries
    WHERE account_id = :account_id
      AND (CAST(:cursor_id AS BIGINT) IS NULL OR id < CAST(:cursor_id AS BIGINT))
      AND (CAST(:entry_type AS VARCHAR) IS NULL OR entry_type = CAST(:entry_type AS VARCHAR))
    ORDER BY id DESC
    LIMIT :limit
""")

# ---------------------------------------------------------------------------
# SQL: holds
# ---------------------------------------------------------------------------

_INSERT_HOLD_SQL = text(f"""
    INSERT INTO credit_holds
        (account_id, amount_microcredits, credit_usd_per_credit_micros_at_hold,
         idempotency_key, status)
    VALUES
        (:account_id, :amount, :factor_micros, :idempotency_key, 'open')
    ON CONFLICT (account_id, idempotency_key) DO NOTHING
    RETURNING {_HOLD_COLUMNS}
""")

_GET_HOLD_SQL = text(f"""
    SELECT {_HOLD_COLUMNS}
    FROM credit_holds
    WHERE id = :hold_id
""")

_GET_HOLD_FOR_UPDATE_SQL = text(f"""
    SELECT {_HOLD_COLUMNS}
    FROM credit_holds
    WHERE id = :hold_id
    FOR UPDATE
""")

_OPEN_HOLDS_TOTAL_SQL = text("""
    SELECT COALESCE(SUM(amount_microcredits), 0) AS total
    FROM credit_holds
    WHERE account_id = :account_id AND status = 'open'
""")

_INCREASE_HOLD_SQL = text(f"""
    UPDATE credit_holds
    SET amount_microcredits = amount_microcredits + :additional,
        increased_at = NOW()
    WHERE id = :hold_id AND status = 'open' AND increased_at IS NULL
    RETURNING {_HOLD_COLUMNS}
""")

_CAPTURE_HOLD_SQL = text(f"""
    UPDATE credit_holds
    SET status = 'captured',
        captured_microcredits = :capture_amount,
        written_off_microcredits = :written_off,
        resolved_at = NOW()
    WHERE id = :hold_id
      AND status = 'open'
      AND :capture_amount <= amount_microcredits
    RETURNING {_HOLD_COLUMNS}
""")

_RELEASE_HOLD_SQL = text(f"""
    UPDATE credit_holds
    SET status = 'released',
        resolved_at = NOW()
    WHERE id = :hold_id AND status = 'open'
    RETURNING {_HOLD_COLUMNS}
""")

# ---------------------------------------------------------------------------
# SQL: app settings
# ---------------------------------------------------------------------------

_GET_SETTING_SQL = text("""
    SELECT value_text FROM app_settings WHERE key = :key
""")


def _row_to_account(row: object) -> Account:
    return Account(
        id=str(row.id),  # type: ignore[attr-defined]
        user_id=row.user_id,  # type: ignore[attr-defined]
        balance_microcredits=row.balance_microcredits,  # type: ignore[attr-defined]
        version=row.version,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
    )


def _row_to_hold(row: object) -> CreditHold:
    return CreditHold(
        id=str(row.id),  # type: ignore[attr-defined]
        account_id=str(row.account_id),  # type: ignore[attr-defined]
        amount_microcredits=row.amount_microcredits,  # type: ignore[attr-defined]
        factor_micros=row.credit_usd_per_credit_micros_at_hold,  # type: ignore[attr-defined]
        idempotency_key=row.idempotency_key,  # type: ignore[attr-defined]
        status=HoldStatus(row.status),  # type: ignore[attr-defined]
        captured_microcredits=row.captured_microcredits,  # type: ignore[attr-defined]
        written_off_microcredits=row.written_off_microcredits or 0,  # type: ignore[attr-defined]
        increased_at=row.increased_at,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        resolved_at=row.resolved_at,  # type: ignore[attr-defined]
    )


def _row_to_ledger(row: object) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,  # type: ignore[attr-defined]
        account_id=str(row.account_id),  # type: ignore[attr-defined]
        entry_type=row.entry_type,  # type: ignore[attr-defined]
        amount=row.amount,  # type: ignore[attr-defined]
        balance_after=row.balance_after,  # type: ignore[attr-defined]
        reference_type=row.reference_type,  # type: ignore[attr-defined]
        reference_id=row.reference_id,  # type: ignore[attr-defined]
        description=row.description,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
    )


class LedgerRepository:
    """Concrete repository — all operations atomic at the SQL level."""

    async def get_or_create_account(self, db: AsyncSession, user_id: str) -> Account:
        result = await db.execute(_GET_OR_CREATE_ACCOUNT_SQL, {"user_id": user_id})
        row = result.fetchone()
        if row is None:
            raise InternalError("Account upsert returned no rows")
        return _row_to_account(row)

    async def get_account(self, db: AsyncSession, account_id: str) -> Account | None:
        result = await db.execute(_GET_ACCOUNT_SQL, {"account_id": account_id})
        row = result.fetchone()
        return _row_to_account(row) if row else None

    async def get_open_holds_total(self, db: AsyncSession, account_id: str) -> int:
        result = await db.execute(_OPEN_HOLDS_TOTAL_SQL, {"account_id": account_id})
        row = result.fetchone()
        return int(row.total) if row else 0

    async def create_hold(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        idempotency_key: str,
        factor_micros: int,
    ) -> CreditHold:
        # Insert first: a concurrent request with the same key blocks on the
        # unique index and then observes the conflict.
        result = await db.execute(
            _INSERT_HOLD_SQL,
            {
                "account_id": account_id,
                "amount": amount,
                "factor_micros": factor_micros,
                "idempotency_key": idempotency_key,
            },
        )
        row = result.fetchone()
        if row is None:
            raise DuplicateHoldError(idempotency_key)
        hold = _row_to_hold(row)

        account = await self._debit(db, account_id, amount)
        await self._journal(
            db, account, LedgerEntryType.HOLD_RESERVE, -amount,
            "HOLD", hold.id, "Credits reserved",
        )
        return hold

    async def get_hold(
        self, db: AsyncSession, hold_id: str, for_update: bool = False
    ) -> CreditHold | None:
        sql = _GET_HOLD_FOR_UPDATE_SQL if for_update else _GET_HOLD_SQL
        result = await db.execute(sql, {"hold_id": hold_id})
        row = result.fetchone()
        return _row_to_hold(row) if row else None

    async def increase_hold(
        self, db: AsyncSession, hold: CreditHold, additional: int
    ) -> CreditHold:
        account = await self._debit(db, hold.account_id, additional)
        result = await db.execute(
            _INCREASE_HOLD_SQL, {"hold_id": hold.id, "additional": additional}
        )
        row = result.fetchone()
        if row is None:
            current = await self.get_hold(db, hold.id)
            raise HoldNotOpenError(hold.id, current.status.value if current else "missing")
        await self._journal(
            db, account, LedgerEntryType.HOLD_INCREASE, -additional,
            "HOLD", hold.id, "Hold increased for actual usage",
        )
        return _row_to_hold(row)

    async def capture_hold(
        self, db: AsyncSession, hold: CreditHold, capture_amount: int, written_off: int
    ) -> CreditHold | None:
        result = await db.execute(
            _CAPTURE_HOLD_SQL,
            {
                "hold_id": hold.id,
                "capture_amount": capture_amount,
                "written_off": written_off,
            },
        )
        row = result.fetchone()
        if row is None:
            return None
        captured = _row_to_hold(row)

        refund = captured.amount_microcredits - capture_amount
        account = await self._credit(db, captured.account_id, refund)
        await self._journal(
            db, account, LedgerEntryType.HOLD_CAPTURE, refund,
            "HOLD", captured.id, f"Hold captured: {capture_amount} microcredits",
        )
        return captured

    async def release_hold(self, db: AsyncSession, hold: CreditHold) -> CreditHold | None:
        result = await db.execute(_RELEASE_HOLD_SQL, {"hold_id": hold.id})
        row = result.fetchone()
        if row is None:
            return None
        released = _row_to_hold(row)

        account = await self._credit(db, released.account_id, released.amount_microcredits)
        await self._journal(
            db, account, LedgerEntryType.HOLD_RELEASE, released.amount_microcredits,
            "HOLD", released.id, "Hold released",
        )
        return released

    async def credit_account(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        entry_type: str,
        ref_type: str,
        ref_id: str,
        description: str,
    ) -> Account:
        account = await self._credit(db, account_id, amount)
        await self._journal(db, account, entry_type, amount, ref_type, ref_id, description)
        return account

    async def list_ledger_entries(
        self,
        db: AsyncSession,
        account_id: str,
        cursor_id: int | None,
        limit: int,
        entry_type: str | None,
    ) -> list[LedgerEntry]:
        result = await db.execute(
            _LIST_LEDGER_SQL,
            {
                "account_id": account_id,
                "cursor_id": cursor_id,
                "entry_type": entry_type,
                "limit": limit,
            },
        )
        return [_row_to_ledger(row) for row in result.fetchall()]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _debit(self, db: AsyncSession, account_id: str, amount: int) -> Account:
        result = await db.execute(_DEBIT_SQL, {"account_id": account_id, "amount": amount})
        row = result.fetchone()
        if row is None:
            current = await self.get_account(db, account_id)
            if current is None:
                raise AccountNotFoundError(account_id)
            raise InsufficientCreditsError(amount, current.balance_microcredits)
        return _row_to_account(row)

    async def _credit(self, db: AsyncSession, account_id: str, amount: int) -> Account:
        result = await db.execute(_CREDIT_SQL, {"account_id": account_id, "amount": amount})
        row = result.fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return _row_to_account(row)

    async def _journal(
        self,
        db: AsyncSession,
        account: Account,
        entry_type: str,
        amount: int,
        ref_type: str | None,
        ref_id: str | None,
        description: str | None,
    ) -> LedgerEntry:
        result = await db.execute(
            _INSERT_LEDGER_SQL,
            {
                "account_id": account.id,
                "entry_type": LedgerEntryType(entry_type).value,
                "amount": amount,
                "balance_after": account.balance_microcredits,
                "reference_type": ref_type,
                "reference_id": ref_id,
                "description": description,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Ledger insert returned no rows")
        return _row_to_ledger(row)


class AppSettingsRepository:
    async def get_value_text(self, db: AsyncSession, key: str) -> str | None:
        result = await db.execute(_GET_SETTING_SQL, {"key": key})
        row = result.fetchone()
        return row.value_text if row else None
