"""Async finalization: idempotent capture/release driven by provider status."""

import logging
from unittest.mock import AsyncMock

import pytest

from src.cl_account.domain.hold_manager import HoldManager, HoldReservation
from src.cl_common.enums import GenerationKind, HoldStatus, JobStatus
from src.cl_common.errors import (
    GenerationNotFoundError,
    GenerationTimeoutError,
    ProviderUnavailableError,
)
from src.cl_generation.application.finalization import FinalizationService
from src.cl_generation.domain.models import Generation, ProviderJobStatus
from src.cl_generation.domain.provider import GenerationProvider, wait_for_terminal
from src.cl_generation.domain.usage import usage_usd_micros
from tests.unit.fakes import InMemoryGenerations, InMemoryLedger, ScriptedProvider


def _job(status: JobStatus, **kwargs: object) -> ProviderJobStatus:
    return ProviderJobStatus(job_id="vid-1", status=status, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def generations() -> InMemoryGenerations:
    return InMemoryGenerations()


@pytest.fixture
async def open_job(
    holds: HoldManager, ledger: InMemoryLedger, generations: InMemoryGenerations, db: AsyncMock
) -> HoldReservation:
    """A sora-2 12s job whose $1.20 estimate is reserved ($0.70/credit)."""
    ledger.fund("user-1", 5_000_000)
    account = await ledger.get_or_create_account(db, "user-1")
    reservation = await holds.create_hold(db, account.id, 1_200_000, "job-key")
    await generations.create(
        db,
        Generation(
            id="",
            video_id="vid-1",
            kind=GenerationKind.VIDEO,
            user_id="user-1",
            account_id=account.id,
            hold_id=reservation.hold_id,
            model="sora-2",
            status=JobStatus.QUEUED,
            seconds=12,
            resolution="standard",
        ),
    )
    return reservation


def _service(
    holds: HoldManager,
    generations: InMemoryGenerations,
    provider: GenerationProvider | None = None,
) -> FinalizationService:
    provider = provider or ScriptedProvider()
    return FinalizationService(
        providers={GenerationKind.VIDEO: provider, GenerationKind.LIPSYNC: provider},
        repo=generations,
        holds=holds,
    )


class TestFinalize:
    async def test_completed_captures_priced_usage(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        outcome = await _service(holds, generations).finalize(db, "vid-1", JobStatus.COMPLETED)

        assert outcome.credits_charged is True
        assert outcome.charged_microcredits == 1_714_286
        assert ledger.holds[open_job.hold_id].status is HoldStatus.CAPTURED
        assert generations.rows["vid-1"].charged_amount_microcredits == 1_714_286
        assert ledger.balance("user-1") == 5_000_000 - 1_714_286

    async def test_failed_releases(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        outcome = await _service(holds, generations).finalize(
            db, "vid-1", JobStatus.FAILED, "moderation_blocked", "blocked"
        )

        assert outcome.credits_charged is False
        assert outcome.charged_microcredits == 0
        assert ledger.holds[open_job.hold_id].status is HoldStatus.RELEASED
        assert ledger.balance("user-1") == 5_000_000
        assert generations.rows["vid-1"].error_code == "moderation_blocked"

    async def test_second_finalize_is_noop(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        svc = _service(holds, generations)
        await svc.finalize(db, "vid-1", JobStatus.COMPLETED)

        again = await svc.finalize(db, "vid-1", JobStatus.FAILED)

        assert again.already_finalized is True
        assert again.status is JobStatus.COMPLETED
        assert again.charged_microcredits == 1_714_286
        assert ledger.balance("user-1") == 5_000_000 - 1_714_286

    async def test_non_terminal_rejected(
        self,
        holds: HoldManager,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        with pytest.raises(ValueError):
            await _service(holds, generations).finalize(db, "vid-1", JobStatus.IN_PROGRESS)

    async def test_unknown_job(
        self, holds: HoldManager, generations: InMemoryGenerations, db: AsyncMock
    ) -> None:
        with pytest.raises(GenerationNotFoundError):
            await _service(holds, generations).finalize(db, "nope", JobStatus.COMPLETED)


class TestCheckJob:
    async def test_in_progress_records_progress_only(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        svc = _service(holds, generations, ScriptedProvider(JobStatus.IN_PROGRESS))

        result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalized is False
        assert result.status == "in_progress"
        assert generations.rows["vid-1"].progress == 50
        assert ledger.holds[open_job.hold_id].is_open

    async def test_provider_error_leaves_hold_untouched(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        svc = _service(
            holds, generations, ScriptedProvider(ProviderUnavailableError("timeout", job_pending=True))
        )

        with pytest.raises(ProviderUnavailableError):
            await svc.check_job(db, "user-1", "vid-1")

        assert ledger.holds[open_job.hold_id].is_open
        assert generations.rows["vid-1"].credits_charged is None

    async def test_completed_finalizes(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        svc = _service(holds, generations, ScriptedProvider(JobStatus.COMPLETED))

        result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalized is True
        assert result.credits_charged is True
        assert result.progress == 100
        assert ledger.holds[open_job.hold_id].status is HoldStatus.CAPTURED

    async def test_finalized_job_does_not_poll(
        self,
        holds: HoldManager,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        provider = ScriptedProvider(JobStatus.COMPLETED)
        svc = _service(holds, generations, provider)
        await svc.check_job(db, "user-1", "vid-1")

        result = await svc.check_job(db, "user-1", "vid-1")

        assert provider.polls == 1
        assert result.finalized is True
        assert result.charged_amount_microcredits == 1_714_286

    async def test_other_users_job_not_found(
        self,
        holds: HoldManager,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        with pytest.raises(GenerationNotFoundError):
            await _service(holds, generations).check_job(db, "user-2", "vid-1")

    async def test_failed_finalization_triggers_emergency_release(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
    ) -> None:
        generations.claim_finalization = AsyncMock(side_effect=RuntimeError("db hiccup"))  # type: ignore[method-assign]
        svc = _service(holds, generations, ScriptedProvider(JobStatus.FAILED))

        result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalization_error is True
        assert ledger.holds[open_job.hold_id].status is HoldStatus.RELEASED
        assert ledger.balance("user-1") == 5_000_000

    async def test_emergency_release_failure_alerts(
        self,
        holds: HoldManager,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        generations.claim_finalization = AsyncMock(side_effect=RuntimeError("db hiccup"))  # type: ignore[method-assign]
        holds.release_hold = AsyncMock(side_effect=RuntimeError("still down"))  # type: ignore[method-assign]
        svc = _service(holds, generations, ScriptedProvider(JobStatus.FAILED))

        with caplog.at_level(logging.CRITICAL, logger="cl.alerts"):
            result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalization_error is True
        assert any("MANUAL ACTION REQUIRED" in r.getMessage() for r in caplog.records)

    async def test_completed_finalization_failure_keeps_hold(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        generations.claim_finalization = AsyncMock(side_effect=RuntimeError("db hiccup"))  # type: ignore[method-assign]
        svc = _service(holds, generations, ScriptedProvider(JobStatus.COMPLETED))

        with caplog.at_level(logging.CRITICAL, logger="cl.alerts"):
            result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalization_error is True
        assert ledger.holds[open_job.hold_id].is_open
        alert = next(r for r in caplog.records if r.name == "cl.alerts")
        assert "hold_status=open" in alert.getMessage()

    async def test_completed_finalization_alert_reports_stored_hold_state(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        generations: InMemoryGenerations,
        open_job: HoldReservation,
        db: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        # Capture lands, then the bookkeeping write fails
        generations.record_charge = AsyncMock(side_effect=RuntimeError("db hiccup"))  # type: ignore[method-assign]
        svc = _service(holds, generations, ScriptedProvider(JobStatus.COMPLETED))

        with caplog.at_level(logging.CRITICAL, logger="cl.alerts"):
            result = await svc.check_job(db, "user-1", "vid-1")

        assert result.finalization_error is True
        alert = next(r for r in caplog.records if r.name == "cl.alerts")
        assert f"hold={open_job.hold_id}" in alert.getMessage()
        assert "hold_status=captured" in alert.getMessage()


class TestWaitForTerminal:
    async def test_returns_terminal(self) -> None:
        provider = ScriptedProvider(JobStatus.IN_PROGRESS, JobStatus.COMPLETED)
        sleep = AsyncMock()

        job = await wait_for_terminal(provider, _job(JobStatus.QUEUED), 5, 1.0, sleep=sleep)

        assert job.status is JobStatus.COMPLETED
        assert provider.polls == 2
        assert sleep.await_count == 2

    async def test_poll_errors_do_not_end_wait(self) -> None:
        provider = ScriptedProvider(ProviderUnavailableError("503"), JobStatus.FAILED)

        job = await wait_for_terminal(provider, _job(JobStatus.QUEUED), 5, 0, sleep=AsyncMock())

        assert job.status is JobStatus.FAILED

    async def test_budget_exhausted(self) -> None:
        provider = ScriptedProvider(JobStatus.IN_PROGRESS, JobStatus.IN_PROGRESS)

        with pytest.raises(GenerationTimeoutError) as exc_info:
            await wait_for_terminal(provider, _job(JobStatus.QUEUED), 2, 0, sleep=AsyncMock())

        assert exc_info.value.http_status == 408
        assert exc_info.value.data == {"job_id": "vid-1", "status": "in_progress"}

    async def test_already_terminal_does_not_poll(self) -> None:
        provider = ScriptedProvider()
        job = await wait_for_terminal(provider, _job(JobStatus.COMPLETED), 3, 0, sleep=AsyncMock())
        assert job.status is JobStatus.COMPLETED
        assert provider.polls == 0


class TestUsage:
    def test_video_priced_from_metadata(self) -> None:
        gen = Generation(
            id="g", video_id="v", kind=GenerationKind.VIDEO, user_id="u", account_id="a",
            hold_id=None, model="sora-2-pro", status=JobStatus.COMPLETED,
            seconds=8, resolution="high",
        )
        assert usage_usd_micros(gen) == 4_000_000

    def test_lipsync_defaults_to_ten_seconds(self) -> None:
        gen = Generation(
            id="g", video_id="v", kind=GenerationKind.LIPSYNC, user_id="u", account_id="a",
            hold_id=None, model="wan-video/wan-2.2-s2v", status=JobStatus.COMPLETED,
        )
        assert usage_usd_micros(gen) == 200_000
