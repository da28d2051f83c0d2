"""Frame-by-frame image rendering for a validated storyboard.

Frames render sequentially with a fixed delay between them. Each frame gets
``1 + len(retry_backoff_seconds)`` attempts. Losing the first frame aborts the
render; later frames that fail are skipped and leave a gap in page numbers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

from comicgen.config.loaders import ModelSpec, get_model
from comicgen.core.exceptions import (
    ConfigurationError,
    FirstPageFatalError,
    GenerationError,
    RenderFailedError,
)
from comicgen.core.metrics import record_image_generation
from comicgen.core.request_context import log_context
from comicgen.core.telemetry import trace_span
from comicgen.graphs.contracts import ComicPage, StoryboardData, StoryboardFrame
from comicgen.graphs.nodes.helpers.references import select_reference_images
from comicgen.graphs.nodes.layout import compose_image_prompt
from comicgen.services.image_providers.base import ImageGenerationRequest, ImageProvider

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKER = "placeholder"


@dataclass
class RenderRequest:
    storyboard: StoryboardData
    start_page_number: int = 1
    model: str | None = None
    character_references: Mapping[str, str] = field(default_factory=dict)
    reference_image: str | None = None
    global_references: Sequence[str] = ()
    size: str | None = None


class ImageRenderOrchestrator:
    def __init__(
        self,
        provider_factory: Callable[[ModelSpec], ImageProvider],
        default_model: str,
        *,
        negative_prompt: str | None = None,
        style_prompt: str | None = None,
        retry_backoff_seconds: Sequence[float] = (2.0, 4.0),
        first_frame_delay_seconds: float = 1.0,
        inter_frame_delay_seconds: float = 1.5,
        max_reference_images: int = 5,
    ):
        self._provider_factory = provider_factory
        self._default_model = default_model
        self._negative_prompt = negative_prompt
        self._style_prompt = style_prompt
        self._retry_backoff_seconds = list(retry_backoff_seconds)
        self._first_frame_delay_seconds = first_frame_delay_seconds
        self._inter_frame_delay_seconds = inter_frame_delay_seconds
        self._max_reference_images = max_reference_images

    def _resolve_model(self, model_id: str | None) -> ModelSpec:
        model_id = model_id or self._default_model
        try:
            spec = get_model(model_id)
        except KeyError as exc:
            raise ConfigurationError(f"unknown image model: {model_id}") from exc
        if spec.category != "image":
            raise ConfigurationError(f"model {model_id} is not an image model")
        return spec

    def _reference_cap(self, spec: ModelSpec) -> int:
        if not spec.supports_reference:
            return 0
        return min(self._max_reference_images, spec.max_reference_images or 1)

    def _build_prompt(self, frame: StoryboardFrame) -> str:
        prompt = compose_image_prompt(frame)
        if self._style_prompt:
            prompt = f"{prompt}\n\nStyle: {self._style_prompt}"
        return prompt

    async def _generate_with_retry(
        self,
        provider: ImageProvider,
        request: ImageGenerationRequest,
        frame_id: int,
    ) -> str:
        max_attempts = 1 + len(self._retry_backoff_seconds)
        for attempt in range(max_attempts):
            try:
                image_url = await provider.generate(request)
                if not image_url or PLACEHOLDER_MARKER in image_url:
                    raise GenerationError(f"provider returned an unusable image url: {image_url!r}")
                record_image_generation(provider.name, "success")
                return image_url
            except Exception as exc:  # noqa: BLE001
                record_image_generation(provider.name, "error")
                logger.warning(
                    "render.frame_failed frame_id=%s provider=%s model=%s attempt=%s/%s error_type=%s error=%s",
                    frame_id,
                    provider.name,
                    request.model,
                    attempt + 1,
                    max_attempts,
                    type(exc).__name__,
                    exc,
                )
                if attempt + 1 >= max_attempts:
                    raise
                await asyncio.sleep(self._retry_backoff_seconds[attempt])

        raise GenerationError("image generation was not attempted")

    async def render(self, request: RenderRequest) -> list[ComicPage]:
        spec = self._resolve_model(request.model)
        provider = self._provider_factory(spec)
        cap = self._reference_cap(spec)
        size = request.size or spec.default_size
        frames = request.storyboard.frames
        pages: list[ComicPage] = []
        start = time.perf_counter()

        for index, frame in enumerate(frames):
            page_number = request.start_page_number + index
            await asyncio.sleep(self._first_frame_delay_seconds if index == 0 else self._inter_frame_delay_seconds)

            with log_context(stage="render", frame_id=frame.frame_id), trace_span(
                "render.frame", frame_id=frame.frame_id, page_number=page_number, model=spec.id
            ) as span:
                references = select_reference_images(
                    frame,
                    request.character_references,
                    request.reference_image,
                    request.global_references,
                    multi=spec.multi_reference,
                    cap=cap,
                )
                generation = ImageGenerationRequest(
                    prompt=self._build_prompt(frame),
                    model=spec.id,
                    negative_prompt=self._negative_prompt,
                    reference_images=tuple(references),
                    size=size,
                )
                try:
                    image_url = await self._generate_with_retry(provider, generation, frame.frame_id)
                except Exception as exc:  # noqa: BLE001
                    if index == 0:
                        logger.error("render.first_frame_fatal frame_id=%s error=%s", frame.frame_id, exc)
                        raise FirstPageFatalError(frame.frame_id, exc) from exc
                    logger.warning(
                        "render.frame_skipped frame_id=%s page_number=%s error=%s",
                        frame.frame_id,
                        page_number,
                        exc,
                    )
                    span.set_attribute("skipped", True)
                    continue

                pages.append(
                    ComicPage(
                        page_number=page_number,
                        image_url=image_url,
                        text=f"Frame {frame.frame_id}: {frame.image_prompt}",
                        dialogue=list(frame.dialogues) or None,
                        narration=frame.narration,
                    )
                )
                logger.info(
                    "render.frame_complete frame_id=%s page_number=%s references=%s",
                    frame.frame_id,
                    page_number,
                    len(references),
                )
                span.set_attribute("reference_count", len(references))

        if not pages:
            raise RenderFailedError("no frame could be rendered")

        logger.info(
            "render_complete model=%s pages=%s skipped=%s duration_ms=%.1f",
            spec.id,
            len(pages),
            len(frames) - len(pages),
            (time.perf_counter() - start) * 1000,
        )
        return pages
