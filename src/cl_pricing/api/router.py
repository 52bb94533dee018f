"""cl_pricing REST API — side-effect-free cost preview."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.domain.hold_manager import HoldManager
from src.cl_common.database import get_db_session
from src.cl_common.micros import usd_micros_to_microcredits
from src.cl_common.response import ApiResponse, success_response
from src.cl_pricing.application.schemas import EstimateResponse
from src.cl_pricing.domain.estimator import OperationKind, estimate_usd_micros

router = APIRouter(prefix="/pricing", tags=["pricing"])

_holds = HoldManager()


@router.get("/estimate")
async def estimate(
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    kind: OperationKind = Query(..., description="chat | video | lipsync | tts | image"),
    model: str | None = Query(None, max_length=100),
    quantity: float = Query(0, ge=0, description="Tokens, seconds, characters or images"),
    output_quantity: int = Query(0, ge=0, description="Chat output tokens"),
    resolution: str = Query("standard", pattern="^(standard|high)$"),
) -> ApiResponse:
    usd_micros = estimate_usd_micros(
        kind, model, quantity, output_quantity=output_quantity, resolution=resolution
    )
    factor = await _holds.get_exchange_factor(db)
    data = EstimateResponse.build(
        kind=kind.value,
        model=model,
        usd_micros=usd_micros,
        microcredits=usd_micros_to_microcredits(usd_micros, factor),
        factor=factor,
    )
    resp = success_response(data.model_dump())
    resp.request_id = getattr(request.state, "request_id", resp.request_id)
    return resp
