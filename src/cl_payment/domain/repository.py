"""Repository Protocol for payments."""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_payment.domain.models import IntentPayment, ManualCreditResult, Payment


class PaymentRepositoryProtocol(Protocol):
    async def create_intent(
        self,
        db: AsyncSession,
        user_id: str,
        reference: str,
        amount_usd_micros: int,
        mint: str,
    ) -> IntentPayment: ...

    async def find_by_reference(
        self, db: AsyncSession, reference: str, user_id: str
    ) -> Payment | None: ...

    async def find_by_signature(
        self, db: AsyncSession, signature: str, user_id: str | None = None
    ) -> Payment | None:
        """user_id=None looks across all users (cross-user checks only)."""
        ...

    async def attach_signature(
        self, db: AsyncSession, payment_id: str, signature: str
    ) -> Payment | None:
        """None if the payment is not pending. Raises DuplicateSignatureError."""
        ...

    async def confirm_payment(
        self,
        db: AsyncSession,
        payment_id: str,
        user_id: str,
        signature: str,
        amount_microcredits: int,
    ) -> Payment | None:
        """pending -> confirmed. None if it was no longer pending.

        The verified signature replaces any unconfirmed one attached earlier.

        Raises DuplicateSignatureError if the signature belongs to another row.
        """
        ...

    async def create_manual_payment(
        self,
        db: AsyncSession,
        user_id: str,
        signature: str,
        amount_microcredits: int,
        mint: str,
    ) -> ManualCreditResult: ...

    async def list_history(
        self, db: AsyncSession, user_id: str, limit: int
    ) -> list[Payment]: ...
