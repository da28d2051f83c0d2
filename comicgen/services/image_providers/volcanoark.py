from __future__ import annotations

from typing import Any

from comicgen.core.exceptions import ImageProviderError
from comicgen.services.image_providers.base import (
    ImageGenerationRequest,
    ImageProvider,
    ImmediateImage,
    PollResult,
    SubmitResult,
    first_present,
)

DEFAULT_SIZE = "2048x2048"


class VolcanoArkImageProvider(ImageProvider):
    """Seedream image generation; the image URL comes back in the submit response."""

    name = "volcanoark"

    def _build_payload(self, request: ImageGenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "response_format": "url",
            "watermark": False,
            "size": request.size or DEFAULT_SIZE,
        }
        refs = list(request.reference_images)
        if len(refs) == 1:
            payload["image"] = refs[0]
        elif refs:
            payload["image"] = refs
        return payload

    async def submit(self, request: ImageGenerationRequest) -> SubmitResult:
        response = await self._request(
            "POST",
            f"{self._api_base}/images/generations",
            json=self._build_payload(request),
            headers=self._headers(),
        )
        body = self._json_or_raise(response)

        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ImageProviderError(f"volcanoark generation failed: {message}", provider=self.name)

        image_url = first_present(body, ("data", 0, "url"))
        if not image_url:
            raise ImageProviderError("volcanoark response carried no image url", provider=self.name)
        return ImmediateImage(image_url=str(image_url))

    async def poll(self, task_id: str) -> PollResult:
        raise ImageProviderError("volcanoark is synchronous and has no tasks to poll", provider=self.name)
