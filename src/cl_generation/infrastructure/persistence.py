"""GenerationRepository — concrete implementation of GenerationRepositoryProtocol.

Finalization is claimed with a conditional UPDATE on ``credits_charged IS
NULL``; overlapping poll cycles serialize on the row lock and the loser
gets 0 rows back. The hold is resolved in the same transaction by the
caller.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.cl_common.enums import GenerationKind, JobStatus
from src.cl_common.errors import InternalError
from src.cl_generation.domain.models import Generation

_COLUMNS = """id, video_id, kind, user_id, account_id, hold_id, model, prompt,
              seconds, size, orientation, resolution, status, progress,
              credits_charged, charged_amount_microcredits, error_code,
              error_message, created_at, updated_at, completed_at"""

_INSERT_SQL = text(f"""
    INSERT INTO generations
        (video_id, kind, user_id, account_id, hold_id, model, prompt,
         seconds, size, orientation, resolution, status, progress)
    VALUES
        (:video_id, :kind, :user_id, :account_id, :hold_id, :model, :prompt,
         :seconds, :size, :orientation, :resolution, :status, :progress)
    RETURNING {_COLUMNS}
""")

_GET_SQL = text(f"""
    SELECT {_COLUMNS}
    FROM generations
    WHERE video_id = :video_id
""")

_GET_FOR_USER_SQL = text(f"""
    SELECT {_COLUMNS}
    FROM generations
    WHERE video_id = :video_id AND user_id = :user_id
""")

_UPDATE_PROGRESS_SQL = text(f"""
    UPDATE generations
    SET status = :status,
        progress = GREATEST(progress, :progress),
        updated_at = NOW()
    WHERE video_id = :video_id AND credits_charged IS NULL
    RETURNING {_COLUMNS}
""")

_CLAIM_FINALIZATION_SQL = text(f"""
    UPDATE generations
    SET status = :status,
        progress = GREATEST(progress, :final_progress),
        credits_charged = :charged,
        error_code = :error_code,
        error_message = :error_message,
        completed_at = NOW(),
        updated_at = NOW()
    WHERE video_id = :video_id AND credits_charged IS NULL
    RETURNING {_COLUMNS}
""")

_RECORD_CHARGE_SQL = text("""
    UPDATE generations
    SET charged_amount_microcredits = :amount,
        updated_at = NOW()
    WHERE video_id = :video_id
""")

_LIST_FOR_USER_SQL = text(f"""
    SELECT {_COLUMNS}
    FROM generations
    WHERE user_id = :user_id
    ORDER BY created_at DESC
    LIMIT :limit
""")


def _row_to_generation(row: object) -> Generation:
    return Generation(
        id=str(row.id),  # type: ignore[attr-defined]
        video_id=row.video_id,  # type: ignore[attr-defined]
        kind=GenerationKind(row.kind),  # type: ignore[attr-defined]
        user_id=row.user_id,  # type: ignore[attr-defined]
        account_id=str(row.account_id),  # type: ignore[attr-defined]
        hold_id=str(row.hold_id) if row.hold_id else None,  # type: ignore[attr-defined]
        model=row.model,  # type: ignore[attr-defined]
        status=JobStatus(row.status),  # type: ignore[attr-defined]
        prompt=row.prompt,  # type: ignore[attr-defined]
        seconds=row.seconds,  # type: ignore[attr-defined]
        size=row.size,  # type: ignore[attr-defined]
        orientation=row.orientation,  # type: ignore[attr-defined]
        resolution=row.resolution,  # type: ignore[attr-defined]
        progress=row.progress,  # type: ignore[attr-defined]
        credits_charged=row.credits_charged,  # type: ignore[attr-defined]
        charged_amount_microcredits=row.charged_amount_microcredits,  # type: ignore[attr-defined]
        error_code=row.error_code,  # type: ignore[attr-defined]
        error_message=row.error_message,  # type: ignore[attr-defined]
        created_at=row.created_at,  # type: ignore[attr-defined]
        updated_at=row.updated_at,  # type: ignore[attr-defined]
        completed_at=row.completed_at,  # type: ignore[attr-defined]
    )


class GenerationRepository:
    async def create(self, db: AsyncSession, generation: Generation) -> Generation:
        result = await db.execute(
            _INSERT_SQL,
            {
                "video_id": generation.video_id,
                "kind": generation.kind.value,
                "user_id": generation.user_id,
                "account_id": generation.account_id,
                "hold_id": generation.hold_id,
                "model": generation.model,
                "prompt": generation.prompt,
                "seconds": generation.seconds,
                "size": generation.size,
                "orientation": generation.orientation,
                "resolution": generation.resolution,
                "status": generation.status.value,
                "progress": generation.progress,
            },
        )
        row = result.fetchone()
        if row is None:
            raise InternalError("Generation insert returned no rows")
        return _row_to_generation(row)

    async def get_by_video_id(
        self, db: AsyncSession, video_id: str, user_id: str | None = None
    ) -> Generation | None:
        if user_id is None:
            result = await db.execute(_GET_SQL, {"video_id": video_id})
        else:
            result = await db.execute(
                _GET_FOR_USER_SQL, {"video_id": video_id, "user_id": user_id}
            )
        row = result.fetchone()
        return _row_to_generation(row) if row else None

    async def update_progress(
        self,
        db: AsyncSession,
        video_id: str,
        status: JobStatus,
        progress: int,
    ) -> Generation | None:
        result = await db.execute(
            _UPDATE_PROGRESS_SQL,
            {"video_id": video_id, "status": status.value, "progress": progress},
        )
        row = result.fetchone()
        return _row_to_generation(row) if row else None

    async def claim_finalization(
        self,
        db: AsyncSession,
        video_id: str,
        status: JobStatus,
        error_code: str | None,
        error_message: str | None,
    ) -> Generation | None:
        result = await db.execute(
            _CLAIM_FINALIZATION_SQL,
            {
                "video_id": video_id,
                "status": status.value,
                "charged": status is JobStatus.COMPLETED,
                "final_progress": 100 if status is JobStatus.COMPLETED else 0,
                "error_code": error_code,
                "error_message": error_message,
            },
        )
        row = result.fetchone()
        return _row_to_generation(row) if row else None

    async def record_charge(
        self, db: AsyncSession, video_id: str, charged_microcredits: int
    ) -> None:
        await db.execute(
            _RECORD_CHARGE_SQL, {"video_id": video_id, "amount": charged_microcredits}
        )

    async def list_for_user(
        self, db: AsyncSession, user_id: str, limit: int
    ) -> list[Generation]:
        result = await db.execute(_LIST_FOR_USER_SQL, {"user_id": user_id, "limit": limit})
        return [_row_to_generation(row) for row in result.fetchall()]
