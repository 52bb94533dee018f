"""PaymentRepository — concrete implementation of PaymentRepositoryProtocol.

Exactly-once crediting rests on two constraints: payments.tx_signature is
UNIQUE, and a payment only leaves 'pending' through a conditional UPDATE.
Crediting the account happens in the same (caller-owned) transaction.
"""

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_common.database import is_unique_violation
from src.cl_common.enums import PaymentStatus, PaymentType
from src.cl_common.errors import DuplicateSignatureError, InternalError
from src.cl_payment.domain.models import (
    IntentPayment,
    ManualCreditResult,
    ManualPayment,
    Payment,
)

_PAYMENT_COLUMNS = """id, user_id, type, status, reference, tx_signature, mint,
              amount_usd_micros, credited_microcredits, created_at, confirmed_at"""

_INSERT_INTENT_SQL = text(f"""
    INSERT INTO payments (user_id, type, status, reference, mint, amount_usd_micros)
    VALUES (:user_id, 'intent', 'pending', :reference, :mint, :amount_usd_micros)
    RETURNING {_PAYMENT_COLUMNS}
""")

_FIND_BY_REFERENCE_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE reference = :reference AND user_id = :user_id
""")

_FIND_BY_SIGNATURE_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE tx_signature = :signature AND user_id = :user_id
""")

_FIND_BY_SIGNATURE_ANY_USER_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE tx_signature = :signature
""")

_ATTACH_SIGNATURE_SQL = text(f"""
    UPDATE payments
    SET tx_signature = :signature
    WHERE id = :payment_id
      AND status = 'pending'
      AND (tx_signature IS NULL OR tx_signature = :signature)
    RETURNING {_PAYMENT_COLUMNS}
""")

_CONFIRM_SQL = text(f"""
    UPDATE payments
    SET status = 'confirmed',
        tx_signature = :signature,
        credited_microcredits = :amount,
        confirmed_at = NOW()
    WHERE id = :payment_id
      AND user_id = :user_id
      AND status = 'pending'
    RETURNING {_PAYMENT_COLUMNS}
""")

_INSERT_MANUAL_SQL = text(f"""
    INSERT INTO payments
        (user_id, type, status, tx_signature, mint,
         amount_usd_micros, credited_microcredits, confirmed_at)
    VALUES
        (:user_id, 'manual', 'confirmed', :signature, :mint,
         :amount, :amount, NOW())
    ON CONFLICT (tx_signature) DO NOTHING
    RETURNING {_PAYMENT_COLUMNS}
""")

# Pending intents without a signature were abandoned in the wallet
_HISTORY_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE user_id = :user_id
      AND NOT (status = 'pending' AND tx_signature IS NULL)
    ORDER BY created_at DESC
    LIMIT :limit
""")


def _row_to_payment(row: object) -> Payment:
    common = dict(
        id=str(row.id),  # type: ignore[attr-defined]
        user_id=row.user_id,  # type: ignore[attr-defined]
        status=PaymentStatus(row.status),  # type: ignore[attr-defined]
        amount_usd_micros=row.amount_usd_micros,  # type: ignore[attr-defined]
        tx_signature=row.tx_signature,  # type: ignore[attr-defined]
        mint=row.mint,  # type: ignore[attr-defined]
        credited_microcredits=row.credited_microcredits,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        confirmed_at=row.confirmed_at,  # type: ignore[attr-defined]
    )
    if PaymentType(row.type) is PaymentType.INTENT:  # type: ignore[attr-defined]
        return IntentPayment(reference=row.reference or "", **common)  # type: ignore[attr-defined]
    return ManualPayment(**common)


class PaymentRepository:
    async def create_intent(
        self,
        db: AsyncSession,
        user_id: str,
        reference: str,
        amount_usd_micros: int,
        mint: str,
    ) -> IntentPayment:
        result = await db.execute(
            _INSERT_INTENT_SQL,
            {
                "user_id": user_id,
                "reference": reference,
                "mint": mint,
                "amount_usd_micros": amount_usd_micros,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Payment intent insert returned no rows")
        payment = _row_to_payment(row)
        if not isinstance(payment, IntentPayment):
            raise InternalError("Payment intent insert returned a non-intent row")
        return payment

    async def find_by_reference(
        self, db: AsyncSession, reference: str, user_id: str
    ) -> Payment | None:
        result = await db.execute(
            _FIND_BY_REFERENCE_SQL, {"reference": reference, "user_id": user_id}
        )
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def find_by_signature(
        self, db: AsyncSession, signature: str, user_id: str | None = None
    ) -> Payment | None:
        if user_id is None:
            result = await db.execute(_FIND_BY_SIGNATURE_ANY_USER_SQL, {"signature": signature})
        else:
            result = await db.execute(
                _FIND_BY_SIGNATURE_SQL, {"signature": signature, "user_id": user_id}
            )
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def attach_signature(
        self, db: AsyncSession, payment_id: str, signature: str
    ) -> Payment | None:
        try:
            result = await db.execute(
                _ATTACH_SIGNATURE_SQL, {"payment_id": payment_id, "signature": signature}
            )
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateSignatureError() from exc
            raise
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def confirm_payment(
        self,
        db: AsyncSession,
        payment_id: str,
        user_id: str,
        signature: str,
        amount_microcredits: int,
    ) -> Payment | None:
        try:
            result = await db.execute(
                _CONFIRM_SQL,
                {
                    "payment_id": payment_id,
                    "user_id": user_id,
                    "signature": signature,
                    "amount": amount_microcredits,
                },
            )
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateSignatureError() from exc
            raise
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def create_manual_payment(
        self,
        db: AsyncSession,
        user_id: str,
        signature: str,
        amount_microcredits: int,
        mint: str,
    ) -> ManualCreditResult:
        result = await db.execute(
            _INSERT_MANUAL_SQL,
            {
                "user_id": user_id,
                "signature": signature,
                "mint": mint,
                "amount": amount_microcredits,
            },
        )
        row = result.fetchone()
        if row is not None:
            return ManualCreditResult(payment=_row_to_payment(row), already_existed=False)

        # Lost the race or signature already recorded (possibly for another user)
        existing = await self.find_by_signature(db, signature)
        if existing is None:
            raise InternalError(f"Manual payment conflict but no row for {signature}")
        return ManualCreditResult(payment=existing, already_existed=True)

    async def list_history(
        self, db: AsyncSession, user_id: str, limit: int
    ) -> list[Payment]:
        result = await db.execute(_HISTORY_SQL, {"user_id": user_id, "limit": limit})
        return [_row_to_payment(row) for row in result.fetchall()]
