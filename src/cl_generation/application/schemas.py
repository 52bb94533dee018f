"""Pydantic schemas for cl_generation API."""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from src.cl_common.datetime_utils import iso_or_none
from src.cl_generation.domain.models import Generation

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


def orientation_for_size(size: str) -> str:
    try:
        width, height = (int(v) for v in size.split("x"))
    except ValueError:
        return "landscape"
    return "landscape" if width >= height else "portrait"


class ChatRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=20_000)
    system: str | None = Field(None, max_length=4_000)
    quality: Literal["nano", "mini", "high"] = "mini"
    max_output_tokens: int = Field(1_000, ge=1, le=16_000)

    @property
    def estimated_input_tokens(self) -> int:
        # ~4 characters per token, rounded up
        chars = len(self.prompt) + len(self.system or "")
        return -(-chars // 4)


class VideoRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4_000)
    model: Literal["sora-2", "sora-2-pro"] = "sora-2"
    seconds: Literal[4, 8, 12] = 12
    size: Literal["1280x720", "720x1280", "1792x1024", "1024x1792"] = "1280x720"
    poll_for_completion: bool = False

    @property
    def orientation(self) -> str:
        return orientation_for_size(self.size)


class LipsyncRequest(BaseModel):
    model: Literal["bytedance/omni-human", "wan-video/wan-2.2-s2v"] = "bytedance/omni-human"
    image_url: str = Field(..., min_length=1, max_length=2_000)
    audio_url: str = Field(..., min_length=1, max_length=2_000)
    prompt: str | None = Field(None, max_length=2_000)
    seconds: int = Field(10, ge=1, le=60)
    poll_for_completion: bool = False


class RemixRequest(BaseModel):
    video_id: str = Field(..., min_length=1, max_length=128)
    prompt: str = Field(..., min_length=1, max_length=4_000)
    poll_for_completion: bool = False


class TtsRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4_096)
    voice: Literal["alloy", "echo", "fable", "onyx", "nova", "shimmer"] = "alloy"

    @field_validator("text")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class ImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2_000)
    aspect_ratio: Literal["1:1", "4:3", "3:4", "16:9", "9:16"] = "4:3"
    portrait: bool = False


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class GenerationItem(BaseModel):
    video_id: str
    kind: str
    model: str
    status: str
    progress: int
    credits_charged: bool | None
    charged_amount_microcredits: int | None
    error_code: str | None
    error_message: str | None
    created_at: str | None
    completed_at: str | None

    @classmethod
    def from_domain(cls, generation: Generation) -> "GenerationItem":
        return cls(
            video_id=generation.video_id,
            kind=generation.kind.value,
            model=generation.model,
            status=generation.status.value,
            progress=generation.progress,
            credits_charged=generation.credits_charged,
            charged_amount_microcredits=generation.charged_amount_microcredits,
            error_code=generation.error_code,
            error_message=generation.error_message,
            created_at=iso_or_none(generation.created_at),
            completed_at=iso_or_none(generation.completed_at),
        )


class JobCheckResponse(BaseModel):
    video_id: str
    status: str
    progress: int
    finalized: bool
    credits_charged: bool | None
    charged_amount_microcredits: int | None = None
    output: Any = None
    error_code: str | None = None
    error_message: str | None = None
    finalization_error: bool = False


class GenerationListResponse(BaseModel):
    items: list[GenerationItem]
