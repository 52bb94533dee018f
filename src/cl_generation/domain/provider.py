"""Generative job provider contract and the bounded poll loop."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from src.cl_common.errors import GenerationTimeoutError, ProviderUnavailableError
from src.cl_generation.domain.models import ProviderJobStatus

logger = logging.getLogger(__name__)


class GenerationProvider(Protocol):
    async def submit(self, params: dict[str, Any]) -> ProviderJobStatus: ...

    async def poll(self, job_id: str) -> ProviderJobStatus: ...


async def wait_for_terminal(
    provider: GenerationProvider,
    job: ProviderJobStatus,
    max_polls: int,
    interval_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ProviderJobStatus:
    """Poll until the provider reports completed/failed.

    A failed poll counts against the budget but never ends the wait: only
    the provider's own terminal status does. Raises GenerationTimeoutError
    once the budget is spent; the caller keeps the hold open.
    """
    polls = 0
    while not job.status.is_terminal and polls < max_polls:
        await sleep(interval_seconds)
        polls += 1
        try:
            job = await provider.poll(job.job_id)
        except ProviderUnavailableError as exc:
            logger.warning(
                "Poll %d/%d failed for job=%s: %s", polls, max_polls, job.job_id, exc.message
            )
            continue
        logger.debug(
            "Poll %d/%d job=%s status=%s progress=%d",
            polls, max_polls, job.job_id, job.status.value, job.progress,
        )

    if not job.status.is_terminal:
        raise GenerationTimeoutError(job.job_id, job.status.value)
    return job
