"""OpenAI clients: Sora video jobs, chat completions and speech."""

from typing import Any

import httpx

from config.settings import settings
from src.cl_common.enums import JobStatus
from src.cl_common.errors import ProviderUnavailableError
from src.cl_generation.domain.models import ProviderJobStatus
from src.cl_generation.infrastructure.http_client import ProviderHttpClient

_VIDEO_STATUS = {
    "queued": JobStatus.QUEUED,
    "in_progress": JobStatus.IN_PROGRESS,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
}


def _to_job(body: dict[str, Any]) -> ProviderJobStatus:
    raw_status = body.get("status")
    status = _VIDEO_STATUS.get(raw_status or "")
    if status is None:
        # Unknown status is ambiguous: never let it finalize anything
        raise ProviderUnavailableError(f"unrecognised video status {raw_status!r}", job_pending=True)
    error = body.get("error") or {}
    return ProviderJobStatus(
        job_id=body["id"],
        status=status,
        progress=int(body.get("progress") or 0),
        model=body.get("model"),
        output={"seconds": body.get("seconds"), "size": body.get("size")},
        error_code=error.get("code"),
        error_message=error.get("message"),
    )


class OpenAIVideoProvider(ProviderHttpClient):
    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.OPENAI_API_BASE,
            api_key if api_key is not None else settings.OPENAI_API_KEY,
            transport=transport,
        )

    async def submit(self, params: dict[str, Any]) -> ProviderJobStatus:
        body = await self._request(
            "POST",
            "/videos",
            json={
                "model": params["model"],
                "prompt": params["prompt"],
                "seconds": str(params["seconds"]),
                "size": params["size"],
            },
        )
        return _to_job(body)

    async def poll(self, job_id: str) -> ProviderJobStatus:
        body = await self._request("GET", f"/videos/{job_id}", job_pending=True)
        return _to_job(body)

    async def remix(self, video_id: str, prompt: str) -> ProviderJobStatus:
        body = await self._request("POST", f"/videos/{video_id}/remix", json={"prompt": prompt})
        return _to_job(body)


class OpenAIChatClient(ProviderHttpClient):
    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.OPENAI_API_BASE,
            api_key if api_key is not None else settings.OPENAI_API_KEY,
            transport=transport,
        )

    async def complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_output_tokens: int,
    ) -> tuple[str, dict[str, int]]:
        """Returns (text, {"prompt_tokens": n, "completion_tokens": m})."""
        body = await self._request(
            "POST",
            "/chat/completions",
            json={
                "model": model,
                "messages": messages,
                "max_completion_tokens": max_output_tokens,
            },
        )
        choices = body.get("choices") or []
        text = (choices[0].get("message") or {}).get("content", "") if choices else ""
        usage = body.get("usage") or {}
        return text or "", {
            "prompt_tokens": int(usage.get("prompt_tokens") or 0),
            "completion_tokens": int(usage.get("completion_tokens") or 0),
        }


class OpenAISpeechClient(ProviderHttpClient):
    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.OPENAI_API_BASE,
            api_key if api_key is not None else settings.OPENAI_API_KEY,
            transport=transport,
        )

    async def synthesize(self, text: str, voice: str, model: str = "tts-1") -> bytes:
        """MP3 audio for ``text``."""
        return await self._request_content(
            "POST",
            "/audio/speech",
            json={"model": model, "voice": voice, "input": text, "response_format": "mp3"},
        )
