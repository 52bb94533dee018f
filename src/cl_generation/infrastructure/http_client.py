"""Shared httpx plumbing for provider clients.

Any transport failure or non-2xx answer becomes ProviderUnavailableError;
callers must treat it as "status unknown", never as a job failure.
"""

import logging
from typing import Any

import httpx

from config.settings import settings
from src.cl_common.errors import ProviderUnavailableError, ServiceNotConfiguredError

logger = logging.getLogger(__name__)


class ProviderHttpClient:
    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        job_pending: bool = False,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        resp = await self._send(method, path, json, job_pending, headers)
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                "invalid JSON response", resp.status_code, job_pending=job_pending
            ) from exc

    async def _request_content(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> bytes:
        """Raw response body, for binary answers such as audio."""
        resp = await self._send(method, path, json)
        return resp.content

    async def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        job_pending: bool = False,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if not self._token:
            raise ServiceNotConfiguredError(f"{self.provider_name} API key is not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("%s %s %s failed: %s", self.provider_name, method, path, exc)
            raise ProviderUnavailableError(str(exc), job_pending=job_pending) from exc

        if resp.status_code >= 400:
            detail = _error_message(resp) or f"HTTP {resp.status_code}"
            logger.warning(
                "%s %s %s -> %d: %s", self.provider_name, method, path, resp.status_code, detail
            )
            raise ProviderUnavailableError(detail, resp.status_code, job_pending=job_pending)
        return resp


def _error_message(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return body.get("detail") if isinstance(body, dict) else None
