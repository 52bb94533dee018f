"""Async finalization of tracked provider jobs.

A job's hold is resolved only when the provider itself reports a terminal
status: completed -> capture priced usage, failed -> release in full.
Transport errors and non-terminal answers leave the hold untouched.
Finalization is claimed via ``credits_charged IS NULL`` so overlapping
poll cycles finalize once.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_account.domain.hold_manager import HoldManager
from src.cl_common.enums import GenerationKind, JobStatus
from src.cl_common.errors import GenerationNotFoundError
from src.cl_generation.application.schemas import (
    GenerationItem,
    GenerationListResponse,
    JobCheckResponse,
)
from src.cl_generation.domain.models import FinalizeOutcome, Generation, ProviderJobStatus
from src.cl_generation.domain.provider import GenerationProvider
from src.cl_generation.domain.repository import GenerationRepositoryProtocol
from src.cl_generation.domain.usage import usage_usd_micros
from src.cl_generation.infrastructure.persistence import GenerationRepository

logger = logging.getLogger(__name__)
alerts = logging.getLogger("cl.alerts")


class FinalizationService:
    def __init__(
        self,
        providers: dict[GenerationKind, GenerationProvider] | None = None,
        repo: GenerationRepositoryProtocol | None = None,
        holds: HoldManager | None = None,
    ) -> None:
        if providers is None:
            from src.cl_generation.infrastructure.openai_client import OpenAIVideoProvider
            from src.cl_generation.infrastructure.replicate_client import ReplicateProvider

            providers = {
                GenerationKind.VIDEO: OpenAIVideoProvider(),
                GenerationKind.LIPSYNC: ReplicateProvider(),
            }
        self._providers = providers
        self._repo: GenerationRepositoryProtocol = repo or GenerationRepository()
        self._holds = holds or HoldManager()

    @property
    def repo(self) -> GenerationRepositoryProtocol:
        return self._repo

    def provider_for(self, kind: GenerationKind) -> GenerationProvider:
        return self._providers[kind]

    async def finalize(
        self,
        db: AsyncSession,
        video_id: str,
        status: JobStatus,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> FinalizeOutcome:
        if not status.is_terminal:
            raise ValueError(f"Cannot finalize non-terminal status {status.value}")
        try:
            claimed = await self._repo.claim_finalization(
                db, video_id, status, error_code, error_message
            )
            if claimed is None:
                await db.rollback()
                return await self._already_finalized(db, video_id)

            charged = 0
            if claimed.hold_id is not None:
                if status is JobStatus.COMPLETED:
                    capture = await self._holds.capture_hold(
                        db, claimed.hold_id, usage_usd_micros(claimed)
                    )
                    charged = capture.captured_microcredits
                else:
                    await self._holds.release_hold(db, claimed.hold_id)
                await self._repo.record_charge(db, video_id, charged)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Generation finalized: video=%s status=%s charged=%d hold=%s",
            video_id, status.value, charged, claimed.hold_id,
        )
        return FinalizeOutcome(
            video_id=video_id,
            status=status,
            credits_charged=status is JobStatus.COMPLETED,
            hold_id=claimed.hold_id,
            charged_microcredits=charged,
        )

    async def _already_finalized(self, db: AsyncSession, video_id: str) -> FinalizeOutcome:
        current = await self._repo.get_by_video_id(db, video_id)
        if current is None:
            raise GenerationNotFoundError(video_id)
        logger.info(
            "Finalize no-op, already finalized: video=%s credits_charged=%s",
            video_id, current.credits_charged,
        )
        return FinalizeOutcome(
            video_id=video_id,
            status=current.status,
            credits_charged=bool(current.credits_charged),
            hold_id=current.hold_id,
            charged_microcredits=current.charged_amount_microcredits or 0,
            already_finalized=True,
        )

    async def check_job(
        self, db: AsyncSession, user_id: str, video_id: str
    ) -> JobCheckResponse:
        """Poll the provider once; finalize only on an unambiguous terminal status."""
        generation = await self._repo.get_by_video_id(db, video_id, user_id)
        if generation is None:
            raise GenerationNotFoundError(video_id)
        if generation.is_finalized:
            return _stored_response(generation)

        # ProviderUnavailableError propagates (502) with the hold untouched
        job = await self.provider_for(generation.kind).poll(video_id)

        if not job.status.is_terminal:
            try:
                updated = await self._repo.update_progress(db, video_id, job.status, job.progress)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            return _live_response(updated or generation, job)

        try:
            outcome = await self.finalize(
                db, video_id, job.status, job.error_code, job.error_message
            )
        except Exception:
            logger.exception("Finalization failed: video=%s status=%s", video_id, job.status.value)
            if job.status is JobStatus.FAILED:
                await self._emergency_release(db, generation)
            else:
                alerts.critical(
                    "Finalization of completed job failed: video=%s hold=%s hold_status=%s",
                    video_id, generation.hold_id,
                    await self.hold_status(db, generation.hold_id),
                )
            response = _live_response(generation, job)
            response.finalization_error = True
            return response

        return JobCheckResponse(
            video_id=video_id,
            status=outcome.status.value,
            progress=100 if outcome.status is JobStatus.COMPLETED else job.progress,
            finalized=True,
            credits_charged=outcome.credits_charged,
            charged_amount_microcredits=outcome.charged_microcredits,
            output=job.output,
            error_code=job.error_code,
            error_message=job.error_message,
        )

    async def hold_status(self, db: AsyncSession, hold_id: str | None) -> str:
        """Stored hold state for log lines; "unknown" when it cannot be read."""
        if hold_id is None:
            return "none"
        try:
            hold = await self._holds.repo.get_hold(db, hold_id)
        except Exception:
            await db.rollback()
            logger.exception("Could not read hold state: hold=%s", hold_id)
            return "unknown"
        return hold.status.value if hold is not None else "missing"

    async def _emergency_release(self, db: AsyncSession, generation: Generation) -> None:
        if generation.hold_id is None:
            return
        try:
            await self._holds.release_hold(db, generation.hold_id)
            await db.commit()
            logger.warning(
                "Emergency hold release succeeded: video=%s hold=%s",
                generation.video_id, generation.hold_id,
            )
        except Exception:
            await db.rollback()
            alerts.critical(
                "MANUAL ACTION REQUIRED: release hold=%s for failed video=%s",
                generation.hold_id,
                generation.video_id,
                exc_info=True,
            )

    async def list_jobs(
        self, db: AsyncSession, user_id: str, limit: int
    ) -> GenerationListResponse:
        generations = await self._repo.list_for_user(db, user_id, limit)
        return GenerationListResponse(
            items=[GenerationItem.from_domain(g) for g in generations]
        )


def _stored_response(generation: Generation) -> JobCheckResponse:
    return JobCheckResponse(
        video_id=generation.video_id,
        status=generation.status.value,
        progress=generation.progress,
        finalized=True,
        credits_charged=generation.credits_charged,
        charged_amount_microcredits=generation.charged_amount_microcredits,
        error_code=generation.error_code,
        error_message=generation.error_message,
    )


def _live_response(generation: Generation, job: ProviderJobStatus) -> JobCheckResponse:
    return JobCheckResponse(
        video_id=generation.video_id,
        status=job.status.value,
        progress=job.progress,
        finalized=False,
        credits_charged=None,
        output=job.output,
        error_code=job.error_code,
        error_message=job.error_message,
    )
