"""Domain models for cl_account — pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass
from datetime import datetime

from src.cl_common.enums import HoldStatus


@dataclass
class Account:
    id: str
    user_id: str
    balance_microcredits: int   # spendable; open holds are already deducted
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CreditHold:
    id: str
    account_id: str
    amount_microcredits: int            # reserved; grows only via increase
    factor_micros: int                  # USD-micros per credit, snapshotted at creation
    idempotency_key: str
    status: HoldStatus
    captured_microcredits: int | None = None
    written_off_microcredits: int = 0
    increased_at: datetime | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is HoldStatus.OPEN


@dataclass
class LedgerEntry:
    id: int                          # BIGSERIAL
    account_id: str
    entry_type: str                  # LedgerEntryType value
    amount: int                      # microcredits, signed balance delta
    balance_after: int               # balance snapshot after op
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None
    created_at: datetime | None = None
