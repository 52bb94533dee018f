"""Global enums — must match DB CHECK constraints exactly."""

from enum import Enum


class HoldStatus(str, Enum):
    OPEN = "open"
    CAPTURED = "captured"
    RELEASED = "released"


class LedgerEntryType(str, Enum):
    PAYMENT_CREDIT = "PAYMENT_CREDIT"
    HOLD_RESERVE = "HOLD_RESERVE"
    HOLD_INCREASE = "HOLD_INCREASE"
    # Capture journals the refund of (reserved - captured), never a second debit
    HOLD_CAPTURE = "HOLD_CAPTURE"
    HOLD_RELEASE = "HOLD_RELEASE"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentType(str, Enum):
    INTENT = "intent"
    MANUAL = "manual"


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class GenerationKind(str, Enum):
    VIDEO = "video"
    LIPSYNC = "lipsync"


class OveragePolicy(str, Enum):
    WRITE_OFF = "write_off"
    HOLD_OPEN = "hold_open"
