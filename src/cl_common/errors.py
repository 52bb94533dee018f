"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Auth/Session
  2xxx: Credits / Holds
  3xxx: Payments
  4xxx: Generation jobs
  9xxx: System
"""

from typing import Any


class AppError(Exception):
    """Base application error.

    ``data`` is rendered into the response envelope (machine-readable
    details); ``headers`` are copied onto the HTTP response.
    """

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        self.data = data
        self.headers = headers
        super().__init__(message)


# --- 1xxx: Auth/Session ---

class UnauthorizedError(AppError):
    def __init__(self) -> None:
        super().__init__(1001, "Invalid or expired session", 401)


# --- 2xxx: Credits / Holds ---

class InsufficientCreditsError(AppError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            2001,
            f"Insufficient credits: required {required} microcredits, "
            f"available {available} microcredits",
            402,
            data={"required_microcredits": required, "available_microcredits": available},
        )


class AccountNotFoundError(AppError):
    def __init__(self, ref: str) -> None:
        super().__init__(2002, f"Account not found: {ref}", 404)


class HoldNotFoundError(AppError):
    def __init__(self, hold_id: str) -> None:
        super().__init__(2003, f"Hold not found: {hold_id}", 404)


class HoldNotOpenError(AppError):
    def __init__(self, hold_id: str, status: str) -> None:
        super().__init__(2004, f"Hold {hold_id} is {status}, expected open", 409)


class DuplicateHoldError(AppError):
    def __init__(self, idempotency_key: str) -> None:
        super().__init__(2005, f"Idempotency key already used: {idempotency_key}", 409)


class UsageExceededEstimateError(AppError):
    def __init__(self, hold_id: str, additional: int, available: int) -> None:
        super().__init__(
            2006,
            f"Actual usage exceeded estimate for hold {hold_id}: need {additional} "
            f"more microcredits, available {available}",
            402,
            data={"additional_microcredits": additional, "available_microcredits": available},
        )


class GuardedOperationError(AppError):
    def __init__(self, detail: str = "Operation failed") -> None:
        super().__init__(2007, detail, 500)


class InvalidIdempotencyKeyError(AppError):
    def __init__(self, max_length: int) -> None:
        super().__init__(
            2008, f"Idempotency-Key must be at most {max_length} characters", 400
        )


# --- 3xxx: Payments ---

class PaymentValidationError(AppError):
    """On-chain transfer failed validation.

    ``reason`` is the machine-readable code surfaced to the user
    (wrong_destination, wrong_mint, zero_amount, ...).
    """

    def __init__(
        self, reason: str, message: str, details: dict[str, Any] | None = None
    ) -> None:
        self.reason = reason
        self.details = details
        super().__init__(
            3001,
            message,
            400,
            data={"status": "invalid", "reason": reason, "details": details},
        )


class PaymentAlreadyConfirmedError(AppError):
    def __init__(self, signature: str, reference: str | None = None) -> None:
        super().__init__(
            3002,
            "Payment already confirmed",
            409,
            data={"status": "already_confirmed", "signature": signature, "reference": reference},
        )


class SignatureForbiddenError(AppError):
    def __init__(self) -> None:
        super().__init__(
            3003,
            "Signature already credited for another user",
            403,
            data={"status": "forbidden"},
        )


class PaymentNotFoundError(AppError):
    def __init__(self, ref: str) -> None:
        super().__init__(3004, f"Payment not found: {ref}", 404)


class PaymentNotPendingError(AppError):
    def __init__(self, status: str, signature: str | None = None) -> None:
        super().__init__(
            3005,
            f"Payment is {status}, expected pending",
            400,
            data={"status": "invalid_state", "current_status": status, "signature": signature},
        )


class DuplicateSignatureError(AppError):
    def __init__(self) -> None:
        super().__init__(
            3006,
            "This transaction signature is already associated with another payment",
            409,
            data={"status": "duplicate_signature"},
        )


# --- 4xxx: Generation jobs ---

class GenerationNotFoundError(AppError):
    def __init__(self, job_id: str) -> None:
        super().__init__(4001, f"Generation not found: {job_id}", 404)


class ProviderUnavailableError(AppError):
    def __init__(
        self, detail: str, status_code: int | None = None, job_pending: bool = False
    ) -> None:
        data: dict[str, Any] = {"provider_status": status_code}
        if job_pending:
            data["note"] = "Credits remain reserved. The job may still be running."
        super().__init__(4002, f"Provider request failed: {detail}", 502, data=data)


class GenerationTimeoutError(AppError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(
            4003,
            f"Generation {job_id} still {status} after polling limit",
            408,
            data={"job_id": job_id, "status": status},
        )


class GenerationFailedError(AppError):
    def __init__(self, job_id: str, error_code: str | None, error_message: str | None) -> None:
        super().__init__(
            4004,
            f"Generation {job_id} failed: {error_message or error_code or 'unknown error'}",
            502,
            data={"job_id": job_id, "error_code": error_code},
        )


class RemixNotAllowedError(AppError):
    def __init__(self, video_id: str, reason: str) -> None:
        super().__init__(4005, f"Video {video_id} cannot be remixed: {reason}", 400)


# --- 9xxx: System ---

class RateLimitError(AppError):
    def __init__(self, limit: int = 0, retry_after: int = 0, reset_at: int = 0) -> None:
        super().__init__(
            9001,
            "Rate limit exceeded",
            429,
            data={"retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_at),
            },
        )


class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)


class LedgerNotInitializedError(AppError):
    def __init__(self) -> None:
        super().__init__(
            9003, "Credit system not initialized. Please run database migrations.", 500
        )


class ServiceNotConfiguredError(AppError):
    def __init__(self, detail: str = "server not configured") -> None:
        super().__init__(9004, detail, 500)


class ChainRpcError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(9005, f"Blockchain RPC failed: {detail}", 502)
