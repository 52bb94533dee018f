"""Replicate predictions client (lip-sync and image models)."""

from typing import Any

import httpx

from config.settings import settings
from src.cl_common.enums import JobStatus
from src.cl_common.errors import ProviderUnavailableError
from src.cl_generation.domain.models import ProviderJobStatus
from src.cl_generation.infrastructure.http_client import ProviderHttpClient

_PREDICTION_STATUS = {
    "starting": JobStatus.IN_PROGRESS,
    "processing": JobStatus.IN_PROGRESS,
    "succeeded": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.FAILED,
}


def _to_job(body: dict[str, Any]) -> ProviderJobStatus:
    raw_status = body.get("status")
    status = _PREDICTION_STATUS.get(raw_status or "")
    if status is None:
        raise ProviderUnavailableError(
            f"unrecognised prediction status {raw_status!r}", job_pending=True
        )
    error = body.get("error")
    return ProviderJobStatus(
        job_id=body["id"],
        status=status,
        progress=100 if status is JobStatus.COMPLETED else 0,
        model=body.get("model"),
        output=body.get("output"),
        error_code="canceled" if raw_status == "canceled" else ("failed" if error else None),
        error_message=str(error) if error else None,
    )


class ReplicateProvider(ProviderHttpClient):
    provider_name = "Replicate"

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.REPLICATE_API_BASE,
            api_token if api_token is not None else settings.REPLICATE_API_TOKEN,
            transport=transport,
        )

    async def submit(self, params: dict[str, Any]) -> ProviderJobStatus:
        body = await self._request(
            "POST", f"/models/{params['model']}/predictions", json={"input": params["input"]}
        )
        return _to_job(body)

    async def poll(self, job_id: str) -> ProviderJobStatus:
        body = await self._request("GET", f"/predictions/{job_id}", job_pending=True)
        return _to_job(body)

    async def predict(self, model: str, model_input: dict[str, Any]) -> ProviderJobStatus:
        """Create a prediction and let Replicate hold the response until it settles."""
        body = await self._request(
            "POST",
            f"/models/{model}/predictions",
            json={"input": model_input},
            headers={"Prefer": "wait"},
        )
        return _to_job(body)
