"""Estimate/run pairs for the guarded generation endpoints.

chat     synchronous, captures actual token usage
tts      synchronous, captures the per-character price
image    synchronous Replicate prediction, captures the per-image price
video    submits a Sora job and keeps the hold open
remix    submits a Sora remix of a completed video and keeps the hold open
lipsync  submits a Replicate prediction and keeps the hold open

With poll_for_completion the request waits (bounded) for the provider and
finalizes in-line; running out of polls returns a 408 payload while the
hold stays open for GET /generate/jobs/{video_id}. A poll or finalize
error after the job is recorded also leaves the hold open, flagged with
finalization_error.
"""

import base64
import logging
from typing import Any

from config.settings import settings
from src.cl_common.enums import GenerationKind, JobStatus
from src.cl_common.errors import (
    GenerationFailedError,
    GenerationTimeoutError,
    ProviderUnavailableError,
    RemixNotAllowedError,
)
from src.cl_generation.application.finalization import FinalizationService
from src.cl_generation.application.schemas import (
    ChatRequest,
    ImageRequest,
    LipsyncRequest,
    RemixRequest,
    TtsRequest,
    VideoRequest,
    orientation_for_size,
)
from src.cl_generation.domain.models import Generation, ProviderJobStatus
from src.cl_generation.domain.provider import wait_for_terminal
from src.cl_generation.domain.usage import DEFAULT_VIDEO_SECONDS
from src.cl_generation.infrastructure.openai_client import (
    OpenAIChatClient,
    OpenAISpeechClient,
    OpenAIVideoProvider,
)
from src.cl_generation.infrastructure.replicate_client import ReplicateProvider
from src.cl_guard.domain.models import GuardContext, GuardedResult
from src.cl_pricing.domain.estimator import (
    chat_model_for_quality,
    estimate_chat_usd_micros,
    estimate_image_usd_micros,
    estimate_lipsync_usd_micros,
    estimate_tts_usd_micros,
    estimate_video_usd_micros,
    resolution_for_size,
)

logger = logging.getLogger(__name__)

IMAGE_MODEL = "google/imagen-4-fast"
DEFAULT_VIDEO_SIZE = "1280x720"

_PORTRAIT_ELEMENTS = (
    "front-facing view",
    "looking directly at camera",
    "clear facial features",
    "sharp focus on face",
    "neutral studio background",
    "soft professional lighting",
    "photorealistic",
)


class GenerationHandlers:
    def __init__(
        self,
        finalization: FinalizationService | None = None,
        chat_client: OpenAIChatClient | None = None,
        speech_client: OpenAISpeechClient | None = None,
        image_client: ReplicateProvider | None = None,
        video_client: OpenAIVideoProvider | None = None,
        max_polls: int | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        self._finalization = finalization or FinalizationService()
        self._chat = chat_client or OpenAIChatClient()
        self._speech = speech_client or OpenAISpeechClient()
        self._images = image_client or ReplicateProvider()
        self._videos = video_client or OpenAIVideoProvider()
        self._max_polls = settings.PROVIDER_MAX_POLLS if max_polls is None else max_polls
        self._interval = (
            settings.PROVIDER_POLL_INTERVAL_SECONDS
            if poll_interval_seconds is None
            else poll_interval_seconds
        )

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_chat(body: ChatRequest) -> int:
        return estimate_chat_usd_micros(
            chat_model_for_quality(body.quality),
            body.estimated_input_tokens,
            body.max_output_tokens,
        )

    async def run_chat(self, body: ChatRequest, ctx: GuardContext) -> GuardedResult:
        model = chat_model_for_quality(body.quality)
        messages = []
        if body.system:
            messages.append({"role": "system", "content": body.system})
        messages.append({"role": "user", "content": body.prompt})

        text, usage = await self._chat.complete(model, messages, body.max_output_tokens)
        cost = estimate_chat_usd_micros(
            model, usage["prompt_tokens"], usage["completion_tokens"]
        )
        return GuardedResult(
            data={"model": model, "text": text, "usage": usage, "usage_usd_micros": cost},
            usage_usd_micros=cost,
        )

    # ------------------------------------------------------------------
    # video
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_video(body: VideoRequest) -> int:
        return estimate_video_usd_micros(
            body.model, body.seconds, resolution_for_size(body.size)
        )

    async def run_video(self, body: VideoRequest, ctx: GuardContext) -> GuardedResult:
        provider = self._finalization.provider_for(GenerationKind.VIDEO)
        job = await provider.submit(
            {"model": body.model, "prompt": body.prompt, "seconds": body.seconds, "size": body.size}
        )
        await self._record(
            ctx,
            job,
            kind=GenerationKind.VIDEO,
            model=body.model,
            prompt=body.prompt,
            seconds=body.seconds,
            size=body.size,
            orientation=body.orientation,
            resolution=resolution_for_size(body.size),
        )
        if not body.poll_for_completion:
            return _started(job, "Video generation started. Use the video_id to check progress.")
        return await self._wait_and_finalize(ctx, GenerationKind.VIDEO, job)

    # ------------------------------------------------------------------
    # remix
    # ------------------------------------------------------------------

    async def estimate_remix(self, body: RemixRequest) -> int:
        """Priced like the original video; sora-2 12s standard if it can't be read."""
        try:
            original = await self._videos.poll(body.video_id)
        except ProviderUnavailableError:
            logger.warning("Remix estimate fell back to default: video=%s", body.video_id)
            return estimate_video_usd_micros("sora-2", DEFAULT_VIDEO_SECONDS, "standard")
        seconds, size = _video_shape(original)
        return estimate_video_usd_micros(
            original.model or "sora-2", seconds, resolution_for_size(size)
        )

    async def run_remix(self, body: RemixRequest, ctx: GuardContext) -> GuardedResult:
        original = await self._videos.poll(body.video_id)
        model = original.model or ""
        if not model.startswith("sora-2"):
            raise RemixNotAllowedError(body.video_id, "only sora-2 videos can be remixed")
        if original.status is not JobStatus.COMPLETED:
            raise RemixNotAllowedError(body.video_id, f"original is {original.status.value}")

        seconds, size = _video_shape(original)
        job = await self._videos.remix(body.video_id, body.prompt)
        await self._record(
            ctx,
            job,
            kind=GenerationKind.VIDEO,
            model=model,
            prompt=f"REMIX: {body.prompt}",
            seconds=seconds,
            size=size,
            orientation=orientation_for_size(size),
            resolution=resolution_for_size(size),
        )
        if body.poll_for_completion:
            result = await self._wait_and_finalize(ctx, GenerationKind.VIDEO, job)
        else:
            result = _started(job, "Video remix started. Use the video_id to check progress.")
        result.data["original_video_id"] = body.video_id
        return result

    # ------------------------------------------------------------------
    # tts
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_tts(body: TtsRequest) -> int:
        return estimate_tts_usd_micros(len(body.text))

    async def run_tts(self, body: TtsRequest, ctx: GuardContext) -> GuardedResult:
        audio = await self._speech.synthesize(body.text, body.voice)
        cost = estimate_tts_usd_micros(len(body.text))
        logger.info(
            "Speech generated: chars=%d bytes=%d hold=%s", len(body.text), len(audio), ctx.hold_id
        )
        return GuardedResult(
            data={
                "audio_data": "data:audio/mp3;base64," + base64.b64encode(audio).decode("ascii"),
                "text_length": len(body.text),
                "voice": body.voice,
                "usage_usd_micros": cost,
            },
            usage_usd_micros=cost,
        )

    # ------------------------------------------------------------------
    # image
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_image(body: ImageRequest) -> int:
        return estimate_image_usd_micros(1)

    async def run_image(self, body: ImageRequest, ctx: GuardContext) -> GuardedResult:
        prompt = _portrait_prompt(body.prompt) if body.portrait else body.prompt.strip()
        job = await self._images.predict(
            IMAGE_MODEL, {"prompt": prompt, "aspect_ratio": body.aspect_ratio}
        )
        # Prefer: wait usually settles the prediction; otherwise poll within budget
        job = await wait_for_terminal(self._images, job, self._max_polls, self._interval)
        if job.status is JobStatus.FAILED:
            raise GenerationFailedError(job.job_id, job.error_code, job.error_message)

        output = job.output
        image_url = output[0] if isinstance(output, list) and output else output
        cost = estimate_image_usd_micros(1)
        return GuardedResult(
            data={
                "image_url": image_url,
                "prediction_id": job.job_id,
                "model": IMAGE_MODEL,
                "usage_usd_micros": cost,
            },
            usage_usd_micros=cost,
        )

    # ------------------------------------------------------------------
    # lipsync
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_lipsync(body: LipsyncRequest) -> int:
        return estimate_lipsync_usd_micros(body.model, body.seconds)

    async def run_lipsync(self, body: LipsyncRequest, ctx: GuardContext) -> GuardedResult:
        provider = self._finalization.provider_for(GenerationKind.LIPSYNC)
        model_input: dict[str, Any] = {"image": body.image_url, "audio": body.audio_url}
        if body.prompt:
            model_input["prompt"] = body.prompt
        job = await provider.submit({"model": body.model, "input": model_input})
        await self._record(
            ctx,
            job,
            kind=GenerationKind.LIPSYNC,
            model=body.model,
            prompt=body.prompt,
            seconds=body.seconds,
        )
        if not body.poll_for_completion:
            return _started(job, "Lip-sync started. Use the video_id to check progress.")
        return await self._wait_and_finalize(ctx, GenerationKind.LIPSYNC, job)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record(
        self,
        ctx: GuardContext,
        job: ProviderJobStatus,
        kind: GenerationKind,
        model: str,
        prompt: str | None,
        seconds: int,
        size: str | None = None,
        orientation: str | None = None,
        resolution: str | None = None,
    ) -> Generation:
        generation = Generation(
            id="",
            video_id=job.job_id,
            kind=kind,
            user_id=ctx.user_id,
            account_id=ctx.account_id,
            hold_id=ctx.hold_id,
            model=model,
            status=JobStatus.QUEUED if job.status.is_terminal else job.status,
            prompt=prompt,
            seconds=seconds,
            size=size,
            orientation=orientation,
            resolution=resolution,
            progress=job.progress,
        )
        try:
            created = await self._finalization.repo.create(ctx.db, generation)
            await ctx.db.commit()
        except Exception:
            await ctx.db.rollback()
            logger.error(
                "Failed to record generation, provider job may be running: job=%s hold=%s",
                job.job_id, ctx.hold_id,
            )
            raise
        logger.info(
            "Generation recorded: video=%s kind=%s hold=%s", job.job_id, kind.value, ctx.hold_id
        )
        return created

    async def _wait_and_finalize(
        self, ctx: GuardContext, kind: GenerationKind, job: ProviderJobStatus
    ) -> GuardedResult:
        try:
            job = await wait_for_terminal(
                self._finalization.provider_for(kind), job, self._max_polls, self._interval
            )
        except GenerationTimeoutError as exc:
            logger.warning("Polling budget exhausted, hold stays open: video=%s", job.job_id)
            return GuardedResult(
                data={**(exc.data or {}), "video_id": job.job_id},
                keep_hold=True,
                error=exc,
            )
        except Exception:
            # The generation row is committed; GET /generate/jobs/{video_id} finalizes later
            logger.exception("Polling failed, hold stays open: video=%s", job.job_id)
            return _pending_finalization(job, "Provider status unavailable.")

        try:
            outcome = await self._finalization.finalize(
                ctx.db, job.job_id, job.status, job.error_code, job.error_message
            )
        except Exception:
            hold_status = await self._finalization.hold_status(ctx.db, ctx.hold_id)
            logger.exception(
                "In-line finalization failed: video=%s status=%s hold=%s hold_status=%s",
                job.job_id, job.status.value, ctx.hold_id, hold_status,
            )
            return _pending_finalization(job, "Finalization failed.")

        return GuardedResult(
            data={
                "video_id": job.job_id,
                "status": outcome.status.value,
                "credits_charged": outcome.credits_charged,
                "charged_amount_microcredits": outcome.charged_microcredits,
                "output": job.output,
                "error_code": job.error_code,
                "error_message": job.error_message,
            },
            # Finalization already resolved the hold
            keep_hold=True,
        )


def _started(job: ProviderJobStatus, message: str) -> GuardedResult:
    return GuardedResult(
        data={
            "video_id": job.job_id,
            "status": job.status.value,
            "model": job.model,
            "progress": job.progress,
            "message": message,
        },
        keep_hold=True,
    )


def _pending_finalization(job: ProviderJobStatus, reason: str) -> GuardedResult:
    return GuardedResult(
        data={
            "video_id": job.job_id,
            "status": job.status.value,
            "finalization_error": True,
            "message": f"{reason} Use the video_id to check progress.",
        },
        keep_hold=True,
    )


def _video_shape(job: ProviderJobStatus) -> tuple[int, str]:
    """(seconds, size) of an OpenAI video, with the request defaults."""
    output = job.output if isinstance(job.output, dict) else {}
    try:
        seconds = int(output.get("seconds") or DEFAULT_VIDEO_SECONDS)
    except ValueError:
        seconds = DEFAULT_VIDEO_SECONDS
    return seconds, output.get("size") or DEFAULT_VIDEO_SIZE


def _portrait_prompt(prompt: str) -> str:
    return ", ".join(("professional portrait photograph", prompt.strip(), *_PORTRAIT_ELEMENTS))
