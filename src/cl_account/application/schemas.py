"""Pydantic schemas and cursor utilities for cl_account API."""

import base64
import json

from pydantic import BaseModel

from src.cl_common.micros import micros_to_display

# ---------------------------------------------------------------------------
# Cursor-based pagination utilities
# ---------------------------------------------------------------------------


def cursor_encode(last_id: int) -> str:
    """Encode a BIGINT primary key into an opaque Base64 cursor string."""
    payload = json.dumps({"id": last_id})
    return base64.b64encode(payload.encode()).decode()


def cursor_decode(cursor: str | None) -> int | None:
    """Decode a cursor string back to the last seen id. Returns None on error."""
    if cursor is None:
        return None
    try:
        payload = json.loads(base64.b64decode(cursor.encode()).decode())
        return int(payload["id"])
    except (ValueError, KeyError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class BalanceResponse(BaseModel):
    user_id: str
    account_id: str
    balance_microcredits: int
    balance_display: str
    held_microcredits: int
    held_display: str

    @classmethod
    def from_micros(
        cls, user_id: str, account_id: str, balance: int, held: int
    ) -> "BalanceResponse":
        return cls(
            user_id=user_id,
            account_id=account_id,
            balance_microcredits=balance,
            balance_display=micros_to_display(balance, places=2),
            held_microcredits=held,
            held_display=micros_to_display(held, places=2),
        )


class LedgerEntryItem(BaseModel):
    id: int
    entry_type: str
    amount_microcredits: int
    amount_display: str
    balance_after_microcredits: int
    balance_after_display: str
    reference_type: str | None
    reference_id: str | None
    description: str | None
    created_at: str  # ISO8601 string


class LedgerResponse(BaseModel):
    items: list[LedgerEntryItem]
    next_cursor: str | None
    has_more: bool
