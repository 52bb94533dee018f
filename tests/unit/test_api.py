"""HTTP-level tests: envelopes, auth, guarded endpoints, rate limiting.

Persistence is replaced with the in-memory fakes (tests/unit/fakes.py); the database
session dependency yields an AsyncMock.
"""

from collections.abc import AsyncGenerator, Iterator
from unittest.mock import AsyncMock

import base58
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel, Field

import src.cl_account.api.router as account_router
import src.cl_payment.api.router as payment_router
import src.cl_pricing.api.router as pricing_router
from src.cl_account.application.service import AccountApplicationService
from src.cl_account.domain.hold_manager import HoldManager
from src.cl_common.database import get_db_session
from src.cl_common.errors import AppError, GenerationTimeoutError
from src.cl_gateway.middleware.rate_limit import InMemoryRateLimiter, RateLimitGuard
from src.cl_guard.application.guard import CreditGuard, with_credit_guard
from src.cl_guard.domain.models import GuardContext, GuardedResult
from src.cl_payment.application.schemas import VerifyResponse
from src.main import app, app_error_handler
from tests.unit.fakes import InMemoryLedger

SIGNATURE = base58.b58encode(bytes([7] * 64)).decode()


async def _fake_session() -> AsyncGenerator[AsyncMock, None]:
    yield AsyncMock()


@pytest.fixture(autouse=True)
def _override_db() -> Iterator[None]:
    app.dependency_overrides[get_db_session] = _fake_session
    yield
    app.dependency_overrides.clear()


class TestHealthAndAuth:
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": "0.1.0"}

    async def test_balance_requires_token(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/credits/balance")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    async def test_garbage_token_rejected(self, client: AsyncClient) -> None:
        resp = await client.get(
            "/api/v1/credits/balance", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.status_code == 401


class TestCredits:
    async def test_balance_reports_available_and_held(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        ledger: InMemoryLedger,
        holds: HoldManager,
        db: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        account = ledger.fund("user-1", 2_000_000)
        await holds.create_hold(db, account.id, 40_000, "req-1")
        monkeypatch.setattr(account_router, "_service", AccountApplicationService(repo=ledger))

        resp = await client.get("/api/v1/credits/balance", headers=auth_headers)

        body = resp.json()
        assert resp.status_code == 200
        assert body["code"] == 0
        assert body["request_id"].startswith("req_")
        assert body["data"]["user_id"] == "user-1"
        assert body["data"]["balance_microcredits"] == 2_000_000 - 57_143
        assert body["data"]["held_microcredits"] == 57_143

    async def test_ledger_rejects_unknown_entry_type(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        resp = await client.get(
            "/api/v1/credits/ledger", params={"entry_type": "BOGUS"}, headers=auth_headers
        )
        assert resp.status_code == 422


class TestPricing:
    async def test_estimate_is_side_effect_free(
        self,
        client: AsyncClient,
        holds: HoldManager,
        ledger: InMemoryLedger,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(pricing_router, "_holds", holds)

        resp = await client.get(
            "/api/v1/pricing/estimate",
            params={"kind": "video", "model": "sora-2", "quantity": 12},
        )

        data = resp.json()["data"]
        assert resp.status_code == 200
        assert data["usd_micros"] == 1_200_000
        assert data["microcredits"] == 1_714_286
        assert data["credit_usd_per_credit_micros"] == 700_000
        assert ledger.holds == {}


class TestGenerateRoutes:
    @pytest.mark.parametrize(
        ("path", "body"),
        [
            ("/api/v1/generate/tts", {"text": "   "}),
            ("/api/v1/generate/image", {"prompt": ""}),
            ("/api/v1/generate/video/remix", {"video_id": "video_1"}),
        ],
    )
    async def test_invalid_body_rejected_before_hold(
        self, client: AsyncClient, auth_headers: dict[str, str], path: str, body: dict[str, str]
    ) -> None:
        resp = await client.post(path, json=body, headers=auth_headers)

        assert resp.status_code == 422
        assert "X-Credit-Hold-Id" not in resp.headers

    async def test_image_requires_token(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/generate/image", json={"prompt": "a fox"})
        assert resp.status_code == 401


class TestPaymentsVerify:
    async def test_malformed_signature(
        self, client: AsyncClient, auth_headers: dict[str, str]
    ) -> None:
        app.dependency_overrides[payment_router.get_verify_rate_limit] = lambda: RateLimitGuard(
            InMemoryRateLimiter(), limit=5, window_seconds=60
        )
        resp = await client.post(
            "/api/v1/payments/verify", json={"signature": "0OIl"}, headers=auth_headers
        )
        assert resp.status_code == 422

    async def test_rate_limited_with_retry_after(
        self, client: AsyncClient, auth_headers: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        guard = RateLimitGuard(InMemoryRateLimiter(), limit=1, window_seconds=60)
        app.dependency_overrides[payment_router.get_verify_rate_limit] = lambda: guard
        service = AsyncMock()
        service.verify_signature.return_value = VerifyResponse.pending(SIGNATURE)
        monkeypatch.setattr(payment_router, "_service", service)

        first = await client.post(
            "/api/v1/payments/verify", json={"signature": SIGNATURE}, headers=auth_headers
        )
        second = await client.post(
            "/api/v1/payments/verify", json={"signature": SIGNATURE}, headers=auth_headers
        )

        assert first.status_code == 200
        assert first.json()["data"]["status"] == "pending"
        assert second.status_code == 429
        assert second.json()["code"] == 9001
        assert int(second.headers["Retry-After"]) >= 1
        assert service.verify_signature.await_count == 1


# ---------------------------------------------------------------------------
# Guarded endpoint mounted on a throwaway app
# ---------------------------------------------------------------------------


class _OpRequest(BaseModel):
    estimate_usd_micros: int = Field(40_000, ge=0)
    outcome: str = "ok"


def _estimate(body: _OpRequest) -> int:
    return body.estimate_usd_micros


async def _run(body: _OpRequest, ctx: GuardContext) -> GuardedResult:
    if body.outcome == "timeout":
        return GuardedResult(
            data={"video_id": "vid_1"},
            keep_hold=True,
            error=GenerationTimeoutError("vid_1", "in_progress"),
        )
    return GuardedResult(data={"hold_id": ctx.hold_id}, usage_usd_micros=38_000)


@pytest.fixture
async def guarded_client(
    holds: HoldManager, auth_headers: dict[str, str]
) -> AsyncGenerator[AsyncClient, None]:
    test_app = FastAPI()
    test_app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    test_app.add_api_route(
        "/op",
        with_credit_guard(_estimate, _run, _OpRequest, CreditGuard(holds)),
        methods=["POST"],
    )
    test_app.dependency_overrides[get_db_session] = _fake_session
    transport = ASGITransport(app=test_app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=auth_headers
    ) as ac:
        yield ac


class TestGuardedEndpoint:
    async def test_success_sets_hold_headers_and_captures(
        self, guarded_client: AsyncClient, ledger: InMemoryLedger
    ) -> None:
        ledger.fund("user-1", 1_000_000)

        resp = await guarded_client.post("/op", json={}, headers={"Idempotency-Key": "k-1"})

        assert resp.status_code == 200
        hold_id = resp.headers["X-Credit-Hold-Id"]
        assert resp.headers["X-Credits-Reserved"] == "57143"
        assert resp.json()["data"] == {"hold_id": hold_id}
        assert ledger.balance("user-1") == 945_714
        assert ledger.holds[hold_id].idempotency_key == "k-1"

    async def test_insufficient_credits_is_402(
        self, guarded_client: AsyncClient, ledger: InMemoryLedger
    ) -> None:
        ledger.fund("user-1", 10_000)

        resp = await guarded_client.post("/op", json={})

        body = resp.json()
        assert resp.status_code == 402
        assert body["code"] == 2001
        assert body["data"]["required_microcredits"] == 57_143
        assert body["data"]["available_microcredits"] == 10_000
        assert ledger.open_holds() == []

    async def test_poll_timeout_is_408_with_hold_kept(
        self, guarded_client: AsyncClient, ledger: InMemoryLedger
    ) -> None:
        ledger.fund("user-1", 1_000_000)

        resp = await guarded_client.post("/op", json={"outcome": "timeout"})

        body = resp.json()
        assert resp.status_code == 408
        assert body["code"] == 4003
        assert body["data"]["video_id"] == "vid_1"
        assert [h.id for h in ledger.open_holds()] == [resp.headers["X-Credit-Hold-Id"]]

    async def test_overlong_idempotency_key_is_400(
        self, guarded_client: AsyncClient, ledger: InMemoryLedger
    ) -> None:
        ledger.fund("user-1", 1_000_000)
        # Two keys sharing a 128-char prefix must not collapse into one hold
        prefix = "k" * 128

        resp = await guarded_client.post(
            "/op", json={}, headers={"Idempotency-Key": prefix + "-a"}
        )
        accepted = await guarded_client.post(
            "/op", json={}, headers={"Idempotency-Key": prefix}
        )

        assert resp.status_code == 400
        assert resp.json()["code"] == 2008
        assert "X-Credit-Hold-Id" not in resp.headers
        assert accepted.status_code == 200
        assert [h.idempotency_key for h in ledger.holds.values()] == [prefix]

    async def test_invalid_body_opens_no_hold(
        self, guarded_client: AsyncClient, ledger: InMemoryLedger
    ) -> None:
        ledger.fund("user-1", 1_000_000)

        resp = await guarded_client.post("/op", json={"estimate_usd_micros": -5})

        assert resp.status_code == 422
        assert ledger.holds == {}
        assert ledger.balance("user-1") == 1_000_000

    async def test_requires_token(self, holds: HoldManager) -> None:
        test_app = FastAPI()
        test_app.add_api_route(
            "/op", with_credit_guard(_estimate, _run, _OpRequest, CreditGuard(holds)),
            methods=["POST"],
        )
        test_app.dependency_overrides[get_db_session] = _fake_session
        async with AsyncClient(
            transport=ASGITransport(app=test_app), base_url="http://test"
        ) as ac:
            resp = await ac.post("/op", json={})
        assert resp.status_code == 401
