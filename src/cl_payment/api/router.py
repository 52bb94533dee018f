"""cl_payment REST API — all endpoints require JWT authentication."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.cl_common.database import get_db_session
from src.cl_common.redis_client import get_redis
from src.cl_common.response import ApiResponse, success_response
from src.cl_gateway.auth.dependencies import CurrentUser, get_current_user
from src.cl_gateway.middleware.rate_limit import RateLimitGuard, RedisRateLimiter
from src.cl_payment.application.schemas import (
    PUBKEY_PATTERN,
    AttachSignatureRequest,
    CreateIntentRequest,
    VerifySignatureRequest,
)
from src.cl_payment.application.service import PaymentApplicationService

router = APIRouter(prefix="/payments", tags=["payments"])

_service = PaymentApplicationService()


async def get_verify_rate_limit() -> RateLimitGuard:
    redis = await get_redis()
    return RateLimitGuard(
        RedisRateLimiter(redis),
        limit=settings.VERIFY_RATE_LIMIT_MAX,
        window_seconds=settings.VERIFY_RATE_LIMIT_WINDOW_SECONDS,
    )


@router.post("/intents", status_code=201)
async def create_intent(
    body: CreateIntentRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _service.create_intent(db, current_user.user_id, body.amount_usd_micros)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.post("/signature")
async def attach_signature(
    body: AttachSignatureRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _service.attach_signature(
        db, current_user.user_id, body.reference, body.signature
    )
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.post("/verify")
async def verify_signature(
    body: VerifySignatureRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    rate_limit: Annotated[RateLimitGuard, Depends(get_verify_rate_limit)],
    request: Request,
) -> ApiResponse:
    await rate_limit.check("verify", current_user.user_id)
    data = await _service.verify_signature(db, current_user.user_id, body.signature)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.get("/status")
async def get_status(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    reference: str = Query(..., pattern=PUBKEY_PATTERN),
) -> ApiResponse:
    data = await _service.get_status(db, current_user.user_id, reference)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.get("/history")
async def list_history(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    limit: int | None = Query(None, ge=1, le=100),
) -> ApiResponse:
    data = await _service.list_history(db, current_user.user_id, limit)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp
