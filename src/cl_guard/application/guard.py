"""CreditGuard — wraps a cost-incurring operation in a hold lifecycle.

    authenticate -> get/create account -> estimate -> create hold (commit)
      -> run -> capture actual usage (commit)
              | keep hold open for async finalization
              | on exception: release (commit) and re-raise

The hold is committed before the operation runs, so a crash mid-operation
leaves an open hold rather than an unreserved provider call.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Annotated, Any

from fastapi import Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.domain.hold_manager import HoldManager, HoldReservation
from src.cl_common.database import get_db_session, is_schema_missing
from src.cl_common.errors import (
    AppError,
    GuardedOperationError,
    InvalidIdempotencyKeyError,
    LedgerNotInitializedError,
)
from src.cl_common.response import ApiResponse, error_response, success_response
from src.cl_gateway.auth.dependencies import CurrentUser, get_current_user
from src.cl_guard.domain.models import GuardContext, GuardedResult
from src.cl_pricing.domain.estimator import DEFAULT_ESTIMATE_USD_MICROS

logger = logging.getLogger(__name__)
alerts = logging.getLogger("cl.alerts")

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_IDEMPOTENCY_KEY_LENGTH = 128

EstimateFn = Callable[[Any], int | Awaitable[int]]
RunFn = Callable[[Any, GuardContext], Awaitable[GuardedResult]]


class CreditGuard:
    def __init__(self, holds: HoldManager | None = None) -> None:
        self._holds = holds or HoldManager()

    async def execute(
        self,
        db: AsyncSession,
        user_id: str,
        body: Any,
        estimate: EstimateFn,
        run: RunFn,
        idempotency_key: str | None = None,
    ) -> tuple[GuardedResult, HoldReservation]:
        key = idempotency_key or str(uuid.uuid4())

        estimated = estimate(body)
        if inspect.isawaitable(estimated):
            estimated = await estimated
        if estimated <= 0:
            logger.warning("Non-positive estimate %s replaced by default", estimated)
            estimated = DEFAULT_ESTIMATE_USD_MICROS

        reservation = await self._open_hold(db, user_id, int(estimated), key)
        ctx = GuardContext(
            db=db,
            user_id=user_id,
            account_id=reservation.account_id,
            hold_id=reservation.hold_id,
            idempotency_key=key,
            reserved_microcredits=reservation.reserved_microcredits,
        )

        try:
            result = await run(body, ctx)
        except Exception as exc:
            await self._release_after_failure(db, reservation.hold_id)
            if isinstance(exc, AppError):
                raise
            logger.exception("Guarded operation failed: hold=%s", reservation.hold_id)
            raise GuardedOperationError(f"Operation failed: {exc}") from exc

        if result.keep_hold:
            logger.info(
                "Hold kept open for async finalization: hold=%s", reservation.hold_id
            )
            return result, reservation

        try:
            await self._holds.capture_hold(
                db, reservation.hold_id, max(result.usage_usd_micros, 0)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            # The provider already did the work; the user still gets the result
            alerts.critical(
                "Capture failed after successful operation, hold left open: hold=%s",
                reservation.hold_id,
                exc_info=True,
            )
        return result, reservation

    async def _open_hold(
        self, db: AsyncSession, user_id: str, estimated_usd_micros: int, key: str
    ) -> HoldReservation:
        try:
            account = await self._holds.repo.get_or_create_account(db, user_id)
            reservation = await self._holds.create_hold(
                db, account.id, estimated_usd_micros, key
            )
            await db.commit()
        except DBAPIError as exc:
            await db.rollback()
            if is_schema_missing(exc):
                alerts.critical("Ledger schema missing, run migrations: %s", exc.orig)
                raise LedgerNotInitializedError() from exc
            raise
        except Exception:
            await db.rollback()
            raise
        return reservation

    async def _release_after_failure(self, db: AsyncSession, hold_id: str) -> None:
        try:
            await db.rollback()
            await self._holds.release_hold(db, hold_id)
            await db.commit()
        except Exception:
            await db.rollback()
            alerts.critical(
                "Failed to release hold after operation error: hold=%s",
                hold_id,
                exc_info=True,
            )


def _parse_body(raw: Any, body_model: type[BaseModel] | None) -> Any:
    if body_model is None:
        return raw
    try:
        return body_model.model_validate(raw)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def with_credit_guard(
    estimate: EstimateFn,
    run: RunFn,
    body_model: type[BaseModel] | None = None,
    guard: CreditGuard | None = None,
) -> Callable[..., Awaitable[ApiResponse]]:
    """Build a FastAPI endpoint that runs ``run`` under a credit hold.

    ``estimate(body)`` returns USD-micros; ``run(body, ctx)`` returns a
    GuardedResult. The body is validated against ``body_model`` (if given)
    before any hold is opened.
    """
    credit_guard = guard or CreditGuard()

    async def endpoint(
        request: Request,
        response: Response,
        current_user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Annotated[AsyncSession, Depends(get_db_session)],
    ) -> ApiResponse:
        try:
            raw = await request.json()
        except ValueError:
            raw = {}
        body = _parse_body(raw if raw is not None else {}, body_model)

        key = request.headers.get(IDEMPOTENCY_HEADER)
        if key is not None:
            key = key.strip()
            if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
                raise InvalidIdempotencyKeyError(MAX_IDEMPOTENCY_KEY_LENGTH)
            key = key or None

        result, reservation = await credit_guard.execute(
            db, current_user.user_id, body, estimate, run, idempotency_key=key
        )
        response.headers["X-Credit-Hold-Id"] = reservation.hold_id
        response.headers["X-Credits-Reserved"] = str(reservation.reserved_microcredits)

        if result.error is not None:
            response.status_code = result.error.http_status
            resp = error_response(result.error.code, result.error.message, result.data)
        else:
            resp = success_response(result.data)
        resp.request_id = getattr(request.state, "request_id", resp.request_id)
        return resp

    return endpoint
