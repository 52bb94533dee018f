"""cl_generation REST API — guarded generation endpoints and job tracking."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_common.database import get_db_session
from src.cl_common.response import ApiResponse, success_response
from src.cl_gateway.auth.dependencies import CurrentUser, get_current_user
from src.cl_generation.application.finalization import FinalizationService
from src.cl_generation.application.handlers import GenerationHandlers
from src.cl_generation.application.schemas import (
    ChatRequest,
    ImageRequest,
    LipsyncRequest,
    RemixRequest,
    TtsRequest,
    VideoRequest,
)
from src.cl_guard.application.guard import CreditGuard, with_credit_guard

router = APIRouter(prefix="/generate", tags=["generate"])

_finalization = FinalizationService()
_handlers = GenerationHandlers(finalization=_finalization)
_guard = CreditGuard()

router.add_api_route(
    "/chat",
    with_credit_guard(_handlers.estimate_chat, _handlers.run_chat, ChatRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Chat completion billed by actual token usage",
)
router.add_api_route(
    "/video",
    with_credit_guard(_handlers.estimate_video, _handlers.run_video, VideoRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Start a video generation job",
)
router.add_api_route(
    "/video/remix",
    with_credit_guard(_handlers.estimate_remix, _handlers.run_remix, RemixRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Remix a completed video",
)
router.add_api_route(
    "/lipsync",
    with_credit_guard(_handlers.estimate_lipsync, _handlers.run_lipsync, LipsyncRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Start a lip-sync job",
)
router.add_api_route(
    "/tts",
    with_credit_guard(_handlers.estimate_tts, _handlers.run_tts, TtsRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Text to speech billed per character",
)
router.add_api_route(
    "/image",
    with_credit_guard(_handlers.estimate_image, _handlers.run_image, ImageRequest, _guard),
    methods=["POST"],
    response_model=ApiResponse,
    summary="Generate an image",
)


@router.get("/jobs/{video_id}")
async def check_job(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    video_id: str = Path(..., min_length=1, max_length=128),
) -> ApiResponse:
    data = await _finalization.check_job(db, current_user.user_id, video_id)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp


@router.get("/jobs")
async def list_jobs(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    limit: int = Query(20, ge=1, le=100),
) -> ApiResponse:
    data = await _finalization.list_jobs(db, current_user.user_id, limit)
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp
