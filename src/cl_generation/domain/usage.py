"""Actual usage of a finished job, priced from its stored metadata."""

from src.cl_common.enums import GenerationKind
from src.cl_generation.domain.models import Generation
from src.cl_pricing.domain.estimator import (
    estimate_lipsync_usd_micros,
    estimate_video_usd_micros,
)

DEFAULT_VIDEO_SECONDS = 12
DEFAULT_LIPSYNC_SECONDS = 10


def usage_usd_micros(generation: Generation) -> int:
    if generation.kind is GenerationKind.LIPSYNC:
        return estimate_lipsync_usd_micros(
            generation.model, generation.seconds or DEFAULT_LIPSYNC_SECONDS
        )
    return estimate_video_usd_micros(
        generation.model,
        generation.seconds or DEFAULT_VIDEO_SECONDS,
        generation.resolution or "standard",
    )
