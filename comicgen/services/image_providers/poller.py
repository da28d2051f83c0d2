from __future__ import annotations

import asyncio
import logging

from comicgen.core.exceptions import (
    ImageProviderError,
    TaskCompletedWithoutResultError,
    TaskFailedError,
    TaskTimeoutError,
)
from comicgen.core.metrics import record_poll_attempt
from comicgen.core.telemetry import trace_span
from comicgen.services.image_providers.base import GenerationTask, TaskStatus

logger = logging.getLogger(__name__)

FATAL_POLL_STATUS_CODES = frozenset({401, 403})


class AsyncPoller:
    """Poll a provider task at a fixed interval until it reaches a terminal status."""

    def __init__(self, interval_seconds: float = 3.0, max_attempts: int = 40):
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts

    async def wait(self, provider, task_id: str) -> str:
        task = GenerationTask(task_id=task_id, provider=provider.name)

        while task.attempts < self.max_attempts:
            await asyncio.sleep(self.interval_seconds)
            task.attempts += 1
            record_poll_attempt(provider.name)

            try:
                with trace_span("image.poll", provider=provider.name, task_id=task_id, attempt=task.attempts):
                    result = await provider.poll(task_id)
            except ImageProviderError as exc:
                if exc.status_code in FATAL_POLL_STATUS_CODES:
                    raise
                # Transient transport/HTTP errors consume an attempt but keep waiting.
                task.history.append("poll_error")
                logger.warning(
                    "poll.request_failed provider=%s task_id=%s attempt=%s/%s error=%s",
                    provider.name,
                    task_id,
                    task.attempts,
                    self.max_attempts,
                    exc,
                )
                continue

            task.status = result.status
            task.history.append(result.raw_status or result.status.value)

            if result.status is TaskStatus.SUCCEEDED:
                if not result.image_url:
                    raise TaskCompletedWithoutResultError(task_id, provider=provider.name)
                task.result_url = result.image_url
                logger.info(
                    "poll.task_succeeded provider=%s task_id=%s attempts=%s",
                    provider.name,
                    task_id,
                    task.attempts,
                )
                return task.result_url

            if result.status is TaskStatus.FAILED:
                raise TaskFailedError(
                    task_id,
                    result.raw_status or result.status.value,
                    result.message,
                    provider=provider.name,
                )

            logger.debug(
                "poll.task_pending provider=%s task_id=%s attempt=%s/%s status=%s",
                provider.name,
                task_id,
                task.attempts,
                self.max_attempts,
                result.raw_status,
            )

        raise TaskTimeoutError(task_id, task.attempts, provider=provider.name)
