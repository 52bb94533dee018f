"""Pydantic schemas for cl_payment API."""

from decimal import Decimal

from pydantic import BaseModel, Field

from src.cl_common.datetime_utils import iso_or_none
from src.cl_common.micros import MICRO, micros_to_display
from src.cl_payment.domain.models import IntentPayment, Payment

# Solana signatures are 64 bytes, base58 -> 87 or 88 chars
SIGNATURE_PATTERN = r"^[1-9A-HJ-NP-Za-km-z]{87,88}$"
PUBKEY_PATTERN = r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateIntentRequest(BaseModel):
    amount_usd: Decimal = Field(
        ..., gt=0, le=10_000, decimal_places=6, description="USDC amount to pay"
    )

    @property
    def amount_usd_micros(self) -> int:
        return int(self.amount_usd * MICRO)


class AttachSignatureRequest(BaseModel):
    reference: str = Field(..., pattern=PUBKEY_PATTERN)
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)


class VerifySignatureRequest(BaseModel):
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class IntentResponse(BaseModel):
    payment_id: str
    reference: str
    recipient: str
    destination_token_account: str
    mint: str
    amount: str
    amount_usd_micros: int
    label: str
    message: str
    url: str


class VerifyResponse(BaseModel):
    status: str  # pending | confirmed | already_confirmed
    signature: str
    credited: bool = False
    payment_id: str | None = None
    type: str | None = None
    reference: str | None = None
    amount_microcredits: int | None = None
    new_balance_microcredits: int | None = None
    new_balance_display: str | None = None

    @classmethod
    def pending(cls, signature: str) -> "VerifyResponse":
        return cls(status="pending", signature=signature)

    @classmethod
    def for_payment(
        cls,
        status: str,
        signature: str,
        payment: Payment,
        credited: bool,
        new_balance: int,
    ) -> "VerifyResponse":
        return cls(
            status=status,
            signature=signature,
            credited=credited,
            payment_id=payment.id,
            type=payment.type.value,
            reference=payment.reference if isinstance(payment, IntentPayment) else None,
            amount_microcredits=payment.credited_microcredits,
            new_balance_microcredits=new_balance,
            new_balance_display=micros_to_display(new_balance, places=2),
        )


class PaymentItem(BaseModel):
    id: str
    type: str
    status: str
    reference: str | None
    tx_signature: str | None
    amount_usd_micros: int
    credited_microcredits: int | None
    created_at: str | None
    confirmed_at: str | None

    @classmethod
    def from_domain(cls, payment: Payment) -> "PaymentItem":
        return cls(
            id=payment.id,
            type=payment.type.value,
            status=payment.status.value,
            reference=payment.reference if isinstance(payment, IntentPayment) else None,
            tx_signature=payment.tx_signature,
            amount_usd_micros=payment.amount_usd_micros,
            credited_microcredits=payment.credited_microcredits,
            created_at=iso_or_none(payment.created_at),
            confirmed_at=iso_or_none(payment.confirmed_at),
        )


class PaymentStatusResponse(BaseModel):
    status: str  # pending | confirmed | failed | not_found
    reference: str
    tx_signature: str | None = None
    credited_microcredits: int | None = None
    confirmed_at: str | None = None


class PaymentHistoryResponse(BaseModel):
    items: list[PaymentItem]
