"""FastAPI application entry point.

Run with: uvicorn src.main:app --reload --port 8000
"""

# ruff: noqa: E402  -- uvloop.install() must run before other imports

import uvloop

uvloop.install()

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from config.settings import settings
from src.cl_account.api.router import router as credits_router
from src.cl_common.database import engine, is_schema_missing
from src.cl_common.errors import AppError, InternalError, LedgerNotInitializedError
from src.cl_common.redis_client import close_redis
from src.cl_common.response import error_response
from src.cl_gateway.middleware.request_log import RequestLogMiddleware
from src.cl_generation.api.router import router as generate_router
from src.cl_payment.api.router import router as payment_router
from src.cl_pricing.api.router import router as pricing_router

logger = logging.getLogger(__name__)
alerts = logging.getLogger("cl.alerts")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Shutdown: dispose the engine and close Redis.

    Connections are opened lazily so the process starts even while the
    database is still coming up; missing schema is reported per request.
    """
    yield
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


app.add_middleware(RequestLogMiddleware)


def _request_id(request: Request, fallback: str) -> str:
    return getattr(request.state, "request_id", fallback)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    resp = error_response(exc.code, exc.message, exc.data)
    resp.request_id = _request_id(request, resp.request_id)
    return JSONResponse(
        status_code=exc.http_status,
        content=resp.model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(DBAPIError)
async def db_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    if is_schema_missing(exc):
        alerts.critical("Ledger schema missing, run migrations: %s", exc.orig)
        err: AppError = LedgerNotInitializedError()
    else:
        logger.error("Unhandled database error: %s", exc.orig, exc_info=exc)
        err = InternalError("Database error")
    resp = error_response(err.code, err.message, err.data)
    resp.request_id = _request_id(request, resp.request_id)
    return JSONResponse(status_code=err.http_status, content=resp.model_dump())


app.include_router(credits_router, prefix="/api/v1")
app.include_router(pricing_router, prefix="/api/v1")
app.include_router(payment_router, prefix="/api/v1")
app.include_router(generate_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "0.1.0"}
