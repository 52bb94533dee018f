"""Domain models for cl_payment — pure dataclasses, no SQLAlchemy dependency.

A payment is a tagged variant: IntentPayment (server pre-registered the
expected transfer and its reference key) or ManualPayment (the user
brought a signature the server never saw before). Both share the common
fields in _PaymentFields.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar

from src.cl_common.enums import PaymentStatus, PaymentType


@dataclass
class _PaymentFields:
    id: str
    user_id: str
    status: PaymentStatus
    amount_usd_micros: int
    tx_signature: str | None = None
    mint: str | None = None
    credited_microcredits: int | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.status is PaymentStatus.CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.status is PaymentStatus.PENDING


@dataclass
class IntentPayment(_PaymentFields):
    type: ClassVar[PaymentType] = PaymentType.INTENT
    reference: str = ""


@dataclass
class ManualPayment(_PaymentFields):
    type: ClassVar[PaymentType] = PaymentType.MANUAL


Payment = IntentPayment | ManualPayment


@dataclass(frozen=True)
class ManualCreditResult:
    payment: Payment
    already_existed: bool
