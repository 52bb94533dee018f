"""Credit guard value objects passed to and returned from guarded operations."""

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_common.errors import AppError


@dataclass(frozen=True)
class GuardContext:
    db: AsyncSession
    user_id: str
    account_id: str
    hold_id: str
    idempotency_key: str
    reserved_microcredits: int


@dataclass
class GuardedResult:
    """What a guarded operation hands back.

    keep_hold=True means the work continues at a provider after this request
    returns; the hold stays open for the async finalization flow.
    """

    data: Any
    usage_usd_micros: int = 0
    keep_hold: bool = False
    # Rendered as an error envelope with the hold left as ``keep_hold`` says
    error: AppError | None = None
