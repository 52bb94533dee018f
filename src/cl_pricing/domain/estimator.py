"""Pricing estimator — pure mapping (operation, model, quantity) -> USD-micros.

Deterministic and side-effect free: used server-side to size holds and to
price actual usage, and by the preview endpoint to show cost before submit.

Rules:
  - Every partial unit rounds UP (never undercharge).
  - Unknown model/operation never prices at zero: it falls back to the most
    expensive known rate for that operation, or DEFAULT_ESTIMATE_USD_MICROS.
"""

import math
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction

from src.cl_common.micros import ceil_div


class OperationKind(str, Enum):
    CHAT = "chat"
    VIDEO = "video"
    LIPSYNC = "lipsync"
    TTS = "tts"
    IMAGE = "image"


@dataclass(frozen=True)
class ChatPricing:
    input_per_1k_usd_micros: int
    output_per_1k_usd_micros: int


# gpt-5: $1.25/1M input, $10.00/1M output -> per 1k tokens
CHAT_PRICING: dict[str, ChatPricing] = {
    "gpt-5": ChatPricing(1250, 10000),
    "gpt-5-mini": ChatPricing(250, 2000),
    "gpt-5-nano": ChatPricing(50, 400),
}

QUALITY_MODEL_MAP: dict[str, str] = {
    "nano": "gpt-5-nano",
    "mini": "gpt-5-mini",
    "high": "gpt-5",
}

# Keyed "{model}-{resolution}"
VIDEO_PRICING_PER_SECOND_USD_MICROS: dict[str, int] = {
    "sora-2-standard": 100_000,
    "sora-2-high": 100_000,  # sora-2 has a single resolution tier
    "sora-2-pro-standard": 300_000,
    "sora-2-pro-high": 500_000,
}

HIGH_RESOLUTION_SIZES = frozenset({"1792x1024", "1024x1792"})

LIPSYNC_PRICING_PER_SECOND_USD_MICROS: dict[str, int] = {
    "bytedance/omni-human": 140_000,
    "wan-video/wan-2.2-s2v": 20_000,
}

TTS_PRICING_PER_1K_CHARS_USD_MICROS = 15_000
IMAGE_PRICING_PER_UNIT_USD_MICROS = 38_000  # imagen-4-fast via Replicate

# Floor for anything we cannot price at all ($0.10)
DEFAULT_ESTIMATE_USD_MICROS = 100_000

_FALLBACK_CHAT = CHAT_PRICING["gpt-5"]
_FALLBACK_VIDEO_PER_SECOND = max(VIDEO_PRICING_PER_SECOND_USD_MICROS.values())
_FALLBACK_LIPSYNC_PER_SECOND = max(LIPSYNC_PRICING_PER_SECOND_USD_MICROS.values())


def _ceil_mul(quantity: int | float, unit_price: int) -> int:
    """ceil(quantity * unit_price) without binary-float drift."""
    if quantity <= 0:
        return 0
    return math.ceil(Fraction(str(quantity)) * unit_price)


def resolution_for_size(size: str | None) -> str:
    """'1792x1024' -> 'high'; anything else -> 'standard'."""
    return "high" if size in HIGH_RESOLUTION_SIZES else "standard"


def chat_model_for_quality(quality: str | None) -> str:
    return QUALITY_MODEL_MAP.get(quality or "mini", QUALITY_MODEL_MAP["mini"])


def estimate_chat_usd_micros(model: str, input_tokens: int, output_tokens: int) -> int:
    pricing = CHAT_PRICING.get(model, _FALLBACK_CHAT)
    input_cost = ceil_div(max(input_tokens, 0) * pricing.input_per_1k_usd_micros, 1000)
    output_cost = ceil_div(max(output_tokens, 0) * pricing.output_per_1k_usd_micros, 1000)
    return input_cost + output_cost


def estimate_video_usd_micros(
    model: str, seconds: int | float, resolution: str = "standard"
) -> int:
    per_second = VIDEO_PRICING_PER_SECOND_USD_MICROS.get(
        f"{model}-{resolution}", _FALLBACK_VIDEO_PER_SECOND
    )
    return _ceil_mul(seconds, per_second)


def estimate_lipsync_usd_micros(model: str, seconds: int | float = 10) -> int:
    per_second = LIPSYNC_PRICING_PER_SECOND_USD_MICROS.get(model, _FALLBACK_LIPSYNC_PER_SECOND)
    return _ceil_mul(seconds, per_second)


def estimate_tts_usd_micros(characters: int) -> int:
    return ceil_div(max(characters, 0) * TTS_PRICING_PER_1K_CHARS_USD_MICROS, 1000)


def estimate_image_usd_micros(count: int = 1) -> int:
    return max(count, 0) * IMAGE_PRICING_PER_UNIT_USD_MICROS


def estimate_usd_micros(
    kind: OperationKind | str,
    model: str | None = None,
    quantity: int | float = 0,
    *,
    output_quantity: int = 0,
    resolution: str = "standard",
) -> int:
    """Single entry point used by the preview endpoint.

    quantity means input tokens (chat), seconds (video, lipsync),
    characters (tts) or images (image). output_quantity is chat output tokens.
    """
    try:
        op = OperationKind(kind)
    except ValueError:
        return DEFAULT_ESTIMATE_USD_MICROS

    if op is OperationKind.CHAT:
        return estimate_chat_usd_micros(model or "", int(quantity), output_quantity)
    if op is OperationKind.VIDEO:
        return estimate_video_usd_micros(model or "", quantity, resolution)
    if op is OperationKind.LIPSYNC:
        return estimate_lipsync_usd_micros(model or "", quantity)
    if op is OperationKind.TTS:
        return estimate_tts_usd_micros(int(quantity))
    return estimate_image_usd_micros(int(quantity) or 1)
