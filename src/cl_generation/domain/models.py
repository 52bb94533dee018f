"""Domain models for cl_generation — pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.cl_common.enums import GenerationKind, JobStatus


@dataclass(frozen=True)
class ProviderJobStatus:
    """One provider's view of a job at a point in time."""

    job_id: str
    status: JobStatus
    progress: int = 0
    model: str | None = None
    output: Any = None
    error_code: str | None = None
    error_message: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class Generation:
    id: str
    video_id: str                 # provider job id
    kind: GenerationKind
    user_id: str
    account_id: str
    hold_id: str | None
    model: str
    status: JobStatus
    prompt: str | None = None
    seconds: int | None = None
    size: str | None = None
    orientation: str | None = None
    resolution: str | None = None
    progress: int = 0
    credits_charged: bool | None = None   # None = not yet finalized
    charged_amount_microcredits: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_finalized(self) -> bool:
        return self.credits_charged is not None


@dataclass(frozen=True)
class FinalizeOutcome:
    video_id: str
    status: JobStatus
    credits_charged: bool
    hold_id: str | None
    charged_microcredits: int = 0
    already_finalized: bool = False
