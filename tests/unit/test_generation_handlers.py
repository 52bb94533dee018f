"""Guarded generation handlers: estimates and run behaviour."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.cl_account.domain.hold_manager import HoldManager
from src.cl_common.enums import GenerationKind, HoldStatus, JobStatus
from src.cl_common.errors import (
    GenerationFailedError,
    GenerationTimeoutError,
    ProviderUnavailableError,
    RemixNotAllowedError,
)
from src.cl_generation.application.finalization import FinalizationService
from src.cl_generation.application.handlers import GenerationHandlers
from src.cl_generation.application.schemas import (
    ChatRequest,
    ImageRequest,
    LipsyncRequest,
    RemixRequest,
    TtsRequest,
    VideoRequest,
)
from src.cl_generation.domain.models import FinalizeOutcome, Generation, ProviderJobStatus
from src.cl_guard.application.guard import CreditGuard
from src.cl_guard.domain.models import GuardContext
from tests.unit.fakes import InMemoryGenerations, InMemoryLedger, ScriptedProvider


def _ctx(db: object) -> GuardContext:
    return GuardContext(
        db=db,  # type: ignore[arg-type]
        user_id="user-1",
        account_id="acct-1",
        hold_id="hold-1",
        idempotency_key="key-1",
        reserved_microcredits=1_714_286,
    )


def _finalization(*polls: ProviderJobStatus) -> MagicMock:
    provider = AsyncMock()
    provider.submit.return_value = ProviderJobStatus(
        job_id="vid-1", status=JobStatus.QUEUED, model="sora-2"
    )
    provider.poll.side_effect = list(polls)
    finalization = MagicMock()
    finalization.provider_for.return_value = provider
    finalization.repo.create = AsyncMock(side_effect=lambda db, g: g)
    finalization.finalize = AsyncMock()
    return finalization


class TestEstimates:
    def test_chat_estimate_uses_max_output(self) -> None:
        body = ChatRequest(prompt="x" * 400, quality="high", max_output_tokens=1000)
        # 100 input tokens + 1000 output tokens at gpt-5 rates
        assert GenerationHandlers.estimate_chat(body) == 125 + 10_000

    def test_video_estimate(self) -> None:
        body = VideoRequest(prompt="a cat", model="sora-2-pro", seconds=8, size="1792x1024")
        assert GenerationHandlers.estimate_video(body) == 4_000_000

    def test_lipsync_estimate(self) -> None:
        body = LipsyncRequest(image_url="https://i", audio_url="https://a", seconds=5)
        assert GenerationHandlers.estimate_lipsync(body) == 700_000


class TestChat:
    async def test_usage_priced_from_actual_tokens(self) -> None:
        chat = AsyncMock()
        chat.complete.return_value = ("hi", {"prompt_tokens": 10, "completion_tokens": 20})
        handlers = GenerationHandlers(finalization=_finalization(), chat_client=chat)

        result = await handlers.run_chat(ChatRequest(prompt="hello", system="be brief"), _ctx(AsyncMock()))

        # gpt-5-mini: 10 * 0.25 -> 3, 20 * 2 -> 40
        assert result.usage_usd_micros == 43
        assert result.keep_hold is False
        assert result.data["text"] == "hi"
        messages = chat.complete.await_args.args[1]
        assert messages[0] == {"role": "system", "content": "be brief"}


class TestVideo:
    async def test_records_generation_and_keeps_hold(self) -> None:
        finalization = _finalization()
        db = AsyncMock()
        handlers = GenerationHandlers(finalization=finalization, chat_client=AsyncMock())

        result = await handlers.run_video(VideoRequest(prompt="a cat", size="720x1280"), _ctx(db))

        assert result.keep_hold is True
        assert result.error is None
        assert result.data["video_id"] == "vid-1"
        created: Generation = finalization.repo.create.await_args.args[1]
        assert created.hold_id == "hold-1"
        assert created.kind is GenerationKind.VIDEO
        assert created.orientation == "portrait"
        assert created.resolution == "standard"
        db.commit.assert_awaited_once()
        finalization.finalize.assert_not_awaited()

    async def test_poll_for_completion_finalizes(self) -> None:
        finalization = _finalization(
            ProviderJobStatus(job_id="vid-1", status=JobStatus.COMPLETED, progress=100)
        )
        finalization.finalize.return_value = FinalizeOutcome(
            video_id="vid-1",
            status=JobStatus.COMPLETED,
            credits_charged=True,
            hold_id="hold-1",
            charged_microcredits=1_714_286,
        )
        handlers = GenerationHandlers(
            finalization=finalization, chat_client=AsyncMock(), max_polls=3, poll_interval_seconds=0
        )

        result = await handlers.run_video(
            VideoRequest(prompt="a cat", poll_for_completion=True), _ctx(AsyncMock())
        )

        assert result.keep_hold is True
        assert result.data["status"] == "completed"
        assert result.data["charged_amount_microcredits"] == 1_714_286

    async def test_poll_timeout_returns_error_and_keeps_hold(self) -> None:
        in_progress = ProviderJobStatus(job_id="vid-1", status=JobStatus.IN_PROGRESS)
        finalization = _finalization(in_progress, in_progress)
        handlers = GenerationHandlers(
            finalization=finalization, chat_client=AsyncMock(), max_polls=2, poll_interval_seconds=0
        )

        result = await handlers.run_video(
            VideoRequest(prompt="a cat", poll_for_completion=True), _ctx(AsyncMock())
        )

        assert result.keep_hold is True
        assert isinstance(result.error, GenerationTimeoutError)
        assert result.data["video_id"] == "vid-1"
        finalization.finalize.assert_not_awaited()

    async def test_record_failure_propagates(self) -> None:
        finalization = _finalization()
        finalization.repo.create = AsyncMock(side_effect=RuntimeError("insert failed"))
        db = AsyncMock()
        handlers = GenerationHandlers(finalization=finalization, chat_client=AsyncMock())

        with pytest.raises(RuntimeError):
            await handlers.run_video(VideoRequest(prompt="a cat"), _ctx(db))
        db.rollback.assert_awaited_once()


class TestTts:
    async def test_captures_per_character_price(self) -> None:
        speech = AsyncMock()
        speech.synthesize.return_value = b"mp3"
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), speech_client=speech
        )
        body = TtsRequest(text="x" * 2_000, voice="nova")

        result = await handlers.run_tts(body, _ctx(AsyncMock()))

        # 2k chars at $0.015 per 1k
        assert GenerationHandlers.estimate_tts(body) == 30_000
        assert result.usage_usd_micros == 30_000
        assert result.keep_hold is False
        assert result.data["audio_data"] == "data:audio/mp3;base64,bXAz"
        speech.synthesize.assert_awaited_once_with("x" * 2_000, "nova")

    def test_blank_text_rejected(self) -> None:
        with pytest.raises(ValueError):
            TtsRequest(text="   ")


class TestImage:
    async def test_captures_per_image_price(self) -> None:
        images = AsyncMock()
        images.predict.return_value = ProviderJobStatus(
            job_id="p1", status=JobStatus.COMPLETED, output=["https://img/1.png"]
        )
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), image_client=images
        )

        result = await handlers.run_image(
            ImageRequest(prompt="a red fox", portrait=True), _ctx(AsyncMock())
        )

        assert result.usage_usd_micros == 38_000
        assert result.data["image_url"] == "https://img/1.png"
        model, model_input = images.predict.await_args.args
        assert model == "google/imagen-4-fast"
        assert model_input["prompt"].startswith("professional portrait photograph, a red fox, ")
        images.poll.assert_not_awaited()

    async def test_unsettled_prediction_is_polled(self) -> None:
        images = AsyncMock()
        images.predict.return_value = ProviderJobStatus(job_id="p1", status=JobStatus.IN_PROGRESS)
        images.poll.return_value = ProviderJobStatus(
            job_id="p1", status=JobStatus.COMPLETED, output="https://img/2.png"
        )
        handlers = GenerationHandlers(
            finalization=_finalization(),
            chat_client=AsyncMock(),
            image_client=images,
            max_polls=3,
            poll_interval_seconds=0,
        )

        result = await handlers.run_image(ImageRequest(prompt="a fox"), _ctx(AsyncMock()))

        assert result.data["image_url"] == "https://img/2.png"
        assert images.predict.await_args.args[1]["prompt"] == "a fox"

    async def test_failed_prediction_raises(self) -> None:
        images = AsyncMock()
        images.predict.return_value = ProviderJobStatus(
            job_id="p1", status=JobStatus.FAILED, error_code="failed", error_message="nsfw"
        )
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), image_client=images
        )

        with pytest.raises(GenerationFailedError):
            await handlers.run_image(ImageRequest(prompt="a fox"), _ctx(AsyncMock()))


def _original(
    status: JobStatus = JobStatus.COMPLETED, model: str = "sora-2-pro"
) -> ProviderJobStatus:
    return ProviderJobStatus(
        job_id="vid-0",
        status=status,
        model=model,
        output={"seconds": "8", "size": "1024x1792"},
    )


class TestRemix:
    async def test_estimate_priced_from_original(self) -> None:
        videos = AsyncMock()
        videos.poll.return_value = _original()
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), video_client=videos
        )

        # sora-2-pro high: 8s at $0.50
        body = RemixRequest(video_id="vid-0", prompt="snow")
        assert await handlers.estimate_remix(body) == 4_000_000

    async def test_estimate_falls_back_when_original_unreadable(self) -> None:
        videos = AsyncMock()
        videos.poll.side_effect = ProviderUnavailableError("timeout")
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), video_client=videos
        )

        body = RemixRequest(video_id="vid-0", prompt="snow")
        assert await handlers.estimate_remix(body) == 1_200_000

    async def test_records_remix_and_keeps_hold(self) -> None:
        finalization = _finalization()
        videos = AsyncMock()
        videos.poll.return_value = _original()
        videos.remix.return_value = ProviderJobStatus(job_id="vid-1", status=JobStatus.QUEUED)
        handlers = GenerationHandlers(
            finalization=finalization, chat_client=AsyncMock(), video_client=videos
        )

        result = await handlers.run_remix(
            RemixRequest(video_id="vid-0", prompt="snow"), _ctx(AsyncMock())
        )

        assert result.keep_hold is True
        assert result.data["video_id"] == "vid-1"
        assert result.data["original_video_id"] == "vid-0"
        created: Generation = finalization.repo.create.await_args.args[1]
        assert created.model == "sora-2-pro"
        assert created.prompt == "REMIX: snow"
        assert created.seconds == 8
        assert created.resolution == "high"
        assert created.orientation == "portrait"
        videos.remix.assert_awaited_once_with("vid-0", "snow")

    @pytest.mark.parametrize(
        "original",
        [_original(status=JobStatus.IN_PROGRESS), _original(model="gpt-image-1")],
    )
    async def test_rejects_unremixable_original(self, original: ProviderJobStatus) -> None:
        videos = AsyncMock()
        videos.poll.return_value = original
        handlers = GenerationHandlers(
            finalization=_finalization(), chat_client=AsyncMock(), video_client=videos
        )

        with pytest.raises(RemixNotAllowedError) as exc_info:
            await handlers.run_remix(
                RemixRequest(video_id="vid-0", prompt="snow"), _ctx(AsyncMock())
            )

        assert exc_info.value.http_status == 400
        videos.remix.assert_not_awaited()


class TestLipsync:
    async def test_submits_model_input(self) -> None:
        finalization = _finalization()
        handlers = GenerationHandlers(finalization=finalization, chat_client=AsyncMock())

        await handlers.run_lipsync(
            LipsyncRequest(image_url="https://i", audio_url="https://a", prompt="smile"),
            _ctx(AsyncMock()),
        )

        provider = finalization.provider_for.return_value
        params = provider.submit.await_args.args[0]
        assert params["model"] == "bytedance/omni-human"
        assert params["input"] == {"image": "https://i", "audio": "https://a", "prompt": "smile"}
        finalization.provider_for.assert_called_with(GenerationKind.LIPSYNC)


class TestInlineFinalizationErrors:
    """Guard + handlers + finalization over the in-memory ledger."""

    @staticmethod
    def _wire(
        holds: HoldManager, generations: InMemoryGenerations, provider: ScriptedProvider
    ) -> tuple[FinalizationService, GenerationHandlers]:
        finalization = FinalizationService(
            providers={GenerationKind.VIDEO: provider}, repo=generations, holds=holds
        )
        handlers = GenerationHandlers(
            finalization=finalization, chat_client=AsyncMock(), max_polls=2, poll_interval_seconds=0
        )
        return finalization, handlers

    async def test_finalize_error_leaves_hold_for_job_check(
        self,
        holds: HoldManager,
        ledger: InMemoryLedger,
        db: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        ledger.fund("user-1", 5_000_000)
        generations = InMemoryGenerations()
        provider = ScriptedProvider(JobStatus.COMPLETED, JobStatus.COMPLETED)
        finalization, handlers = self._wire(holds, generations, provider)
        monkeypatch.setattr(
            generations, "claim_finalization", AsyncMock(side_effect=RuntimeError("deadlock"))
        )

        result, reservation = await CreditGuard(holds).execute(
            db,
            "user-1",
            VideoRequest(prompt="a cat", poll_for_completion=True),
            handlers.estimate_video,
            handlers.run_video,
        )

        assert result.keep_hold is True
        assert result.error is None
        assert result.data["finalization_error"] is True
        assert result.data["video_id"] == "vid-1"
        assert ledger.holds[reservation.hold_id].is_open
        assert generations.rows["vid-1"].credits_charged is None

        monkeypatch.undo()
        check = await finalization.check_job(db, "user-1", "vid-1")

        assert check.finalized is True
        assert check.charged_amount_microcredits == reservation.reserved_microcredits
        assert ledger.holds[reservation.hold_id].status is HoldStatus.CAPTURED
        assert ledger.balance("user-1") == 5_000_000 - reservation.reserved_microcredits

    async def test_malformed_poll_leaves_hold_open(
        self, holds: HoldManager, ledger: InMemoryLedger, db: AsyncMock
    ) -> None:
        ledger.fund("user-1", 5_000_000)
        generations = InMemoryGenerations()
        provider = ScriptedProvider(KeyError("status"))
        _, handlers = self._wire(holds, generations, provider)

        result, reservation = await CreditGuard(holds).execute(
            db,
            "user-1",
            VideoRequest(prompt="a cat", poll_for_completion=True),
            handlers.estimate_video,
            handlers.run_video,
        )

        assert result.keep_hold is True
        assert result.data["finalization_error"] is True
        assert result.data["status"] == "queued"
        assert ledger.holds[reservation.hold_id].is_open
        assert generations.rows["vid-1"].hold_id == reservation.hold_id
