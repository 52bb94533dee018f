"""Repository Protocol for tracked generation jobs."""

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_common.enums import JobStatus
from src.cl_generation.domain.models import Generation


class GenerationRepositoryProtocol(Protocol):
    async def create(self, db: AsyncSession, generation: Generation) -> Generation: ...

    async def get_by_video_id(
        self, db: AsyncSession, video_id: str, user_id: str | None = None
    ) -> Generation | None: ...

    async def update_progress(
        self,
        db: AsyncSession,
        video_id: str,
        status: JobStatus,
        progress: int,
    ) -> Generation | None:
        """Non-terminal progress only; never touches a finalized row."""
        ...

    async def claim_finalization(
        self,
        db: AsyncSession,
        video_id: str,
        status: JobStatus,
        error_code: str | None,
        error_message: str | None,
    ) -> Generation | None:
        """Set the terminal status and credits_charged. None if already finalized."""
        ...

    async def record_charge(
        self, db: AsyncSession, video_id: str, charged_microcredits: int
    ) -> None: ...

    async def list_for_user(
        self, db: AsyncSession, user_id: str, limit: int
    ) -> list[Generation]: ...
