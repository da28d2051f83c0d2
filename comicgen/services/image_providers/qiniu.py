from __future__ import annotations

import logging
from typing import Any

from comicgen.core.exceptions import ImageProviderError
from comicgen.services.image_providers.base import (
    ImageGenerationRequest,
    ImageProvider,
    ImmediateImage,
    PendingTask,
    PollResult,
    SubmitResult,
    TaskStatus,
    first_present,
    normalize_task_status,
)

logger = logging.getLogger(__name__)

DEFAULT_SIZE = "1024x1024"
TASK_PATHS = ("/tasks/{task_id}", "/images/tasks/{task_id}", "/image/tasks/{task_id}")

_IMAGE_URL_PATHS = (
    ("data", 0, "url"),
    ("images", 0, "url"),
    ("images", 0, "image_url"),
    ("data", "url"),
    ("data", "image_url"),
    ("url",),
)


class QiniuImageProvider(ImageProvider):
    """Qiniu AI images: some models answer inline, others hand back a task id."""

    name = "qiniu"

    def _build_payload(self, request: ImageGenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "n": 1,
            "size": request.size or DEFAULT_SIZE,
            "response_format": "url",
        }
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.reference_images:
            payload["image_reference"] = request.reference_images[0]
            payload["human_fidelity"] = 0.8
        return payload

    @staticmethod
    def _image_from(body: dict[str, Any]) -> str | None:
        url = first_present(body, *_IMAGE_URL_PATHS)
        if url:
            return str(url)
        b64 = first_present(body, ("data", 0, "b64_json"))
        if b64:
            return f"data:image/png;base64,{b64}"
        return None

    async def submit(self, request: ImageGenerationRequest) -> SubmitResult:
        response = await self._request(
            "POST",
            f"{self._api_base}/images/generations",
            json=self._build_payload(request),
            headers=self._headers(),
        )
        body = self._json_or_raise(response)

        image_url = self._image_from(body)
        if image_url:
            return ImmediateImage(image_url=image_url)

        task_id = first_present(body, ("data", "task_id"), ("task_id",), ("id",))
        if not task_id:
            raise ImageProviderError("qiniu response carried neither an image nor a task id", provider=self.name)
        logger.info("qiniu.task_submitted task_id=%s model=%s", task_id, request.model)
        return PendingTask(task_id=str(task_id))

    async def poll(self, task_id: str) -> PollResult:
        last_status: int | None = None
        for template in TASK_PATHS:
            response = await self._request(
                "GET",
                f"{self._api_base}{template.format(task_id=task_id)}",
                headers=self._headers(),
            )
            if response.status_code == 404:
                last_status = 404
                continue
            body = self._json_or_raise(response)
            raw_status = first_present(body, ("data", "task_status"), ("task_status",), ("status",), ("data", "status"))
            image_url = first_present(
                body,
                ("data", "task_result", "images", 0, "url"),
                ("data", "results", 0, "url"),
                ("images", 0, "url"),
                ("data", 0, "url"),
            )
            message = first_present(body, ("data", "task_status_msg"), ("message",), ("error", "message"))
            status = normalize_task_status(raw_status)
            if image_url and status is TaskStatus.PENDING:
                status = TaskStatus.SUCCEEDED
            return PollResult(
                status=status,
                image_url=str(image_url) if image_url else None,
                message=message,
                raw_status=str(raw_status) if raw_status else None,
            )

        raise ImageProviderError(
            f"qiniu task {task_id} not found on any task endpoint",
            provider=self.name,
            status_code=last_status,
        )
