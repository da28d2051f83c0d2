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
    normalize_prompt,
    normalize_task_status,
)

logger = logging.getLogger(__name__)

TEXT2IMAGE_PATH = "/services/aigc/text2image/image-synthesis"
IMAGE2IMAGE_PATH = "/services/aigc/image2image/image-synthesis"
MULTIMODAL_PATH = "/services/aigc/image-generation/generation"

MULTIMODAL_MODELS = {"wan2.6-image"}
IMAGE2IMAGE_MODELS = {"wan2.5-i2i-preview"}
MULTIMODAL_MAX_REFERENCES = 3
MAX_PROMPT_CHARS = 900
DEFAULT_SIZE = "1024*1024"

_IMAGE_URL_PATHS = (
    ("output", "choices", 0, "message", "content", 0, "image"),
    ("output", "results", 0, "url"),
    ("output", "results", 0, "image_url"),
    ("output", "image_url"),
    ("image_url",),
)


class DashScopeImageProvider(ImageProvider):
    """Wan image synthesis: async submit with X-DashScope-Async, then task polling."""

    name = "dashscope"

    def _build_submit(self, request: ImageGenerationRequest) -> tuple[str, dict[str, Any]]:
        prompt = normalize_prompt(request.prompt, MAX_PROMPT_CHARS)
        refs = list(request.reference_images)
        size = request.size or DEFAULT_SIZE

        if request.model in MULTIMODAL_MODELS:
            content: list[dict[str, str]] = [{"text": prompt}]
            content.extend({"image": ref} for ref in refs[:MULTIMODAL_MAX_REFERENCES])
            parameters: dict[str, Any] = {
                "size": size,
                "n": 1,
                "enable_interleave": not refs,
                "prompt_extend": True,
                "watermark": False,
            }
            if request.negative_prompt:
                parameters["negative_prompt"] = request.negative_prompt
            payload = {
                "model": request.model,
                "input": {"messages": [{"role": "user", "content": content}]},
                "parameters": parameters,
            }
            return MULTIMODAL_PATH, payload

        if request.model in IMAGE2IMAGE_MODELS:
            payload = {
                "model": request.model,
                "input": {"prompt": prompt},
                "parameters": {"n": 1, "prompt_extend": True},
            }
            if refs:
                payload["input"]["images"] = refs
            return IMAGE2IMAGE_PATH, payload

        payload = {
            "model": request.model,
            "input": {"prompt": prompt},
            "parameters": {"size": size, "n": 1},
        }
        if request.negative_prompt:
            payload["input"]["negative_prompt"] = request.negative_prompt
        if refs:
            payload["input"]["ref_img"] = refs[0]
        return TEXT2IMAGE_PATH, payload

    async def submit(self, request: ImageGenerationRequest) -> SubmitResult:
        path, payload = self._build_submit(request)
        response = await self._request(
            "POST",
            f"{self._api_base}{path}",
            json=payload,
            headers=self._headers({"X-DashScope-Async": "enable"}),
        )
        body = self._json_or_raise(response)

        image_url = first_present(body, *_IMAGE_URL_PATHS)
        if image_url:
            return ImmediateImage(image_url=str(image_url))

        task_id = first_present(body, ("output", "task_id"), ("task_id",), ("data", "task_id"), ("id",))
        if not task_id:
            raise ImageProviderError("dashscope response carried neither an image nor a task id", provider=self.name)
        logger.info("dashscope.task_submitted task_id=%s model=%s", task_id, request.model)
        return PendingTask(task_id=str(task_id))

    async def poll(self, task_id: str) -> PollResult:
        response = await self._request(
            "GET",
            f"{self._api_base}/tasks/{task_id}",
            headers=self._headers(),
        )
        body = self._json_or_raise(response)
        raw_status = first_present(
            body,
            ("output", "task_status"),
            ("output", "status"),
            ("data", "task_status"),
            ("status",),
            ("task_status",),
        )
        image_url = first_present(body, *_IMAGE_URL_PATHS)
        message = first_present(body, ("output", "message"), ("message",))
        status = normalize_task_status(raw_status)
        if image_url and status is TaskStatus.PENDING:
            status = TaskStatus.SUCCEEDED
        return PollResult(
            status=status,
            image_url=str(image_url) if image_url else None,
            message=message,
            raw_status=str(raw_status) if raw_status else None,
        )
