"""
Centralized service builders.

Every route builds its collaborators through these functions so credentials,
candidate chains and timeouts come from one place.
"""

from __future__ import annotations

from comicgen.config.loaders import ModelSpec
from comicgen.core.exceptions import ConfigurationError
from comicgen.core.settings import settings
from comicgen.graphs.nodes.render import ImageRenderOrchestrator
from comicgen.graphs.story_build import STAGE_OUTLINE, STAGE_SCRIPT, STAGE_STORYBOARD, StoryPipeline
from comicgen.services.fallback import FallbackExecutor, to_candidates
from comicgen.services.image_providers import (
    AsyncPoller,
    DashScopeImageProvider,
    ImageProvider,
    QiniuImageProvider,
    VolcanoArkImageProvider,
)
from comicgen.services.model_invoker import DashScopeChatTransport, GeminiChatTransport, ModelInvoker
from comicgen.services.rate_limiter import RateLimiter
from comicgen.services.storage import LocalArtifactStore

_rate_limiter: RateLimiter | None = None


def build_model_invoker() -> ModelInvoker:
    """Wire the text transports whose credentials are present.

    Raises:
        ConfigurationError: If no text provider is configured at all.
    """
    dashscope = None
    gemini = None
    if settings.dashscope_api_key:
        dashscope = DashScopeChatTransport(
            api_key=settings.dashscope_api_key,
            api_url=settings.dashscope_text_api_url,
            default_timeout_seconds=settings.storyboard_timeout_seconds,
        )
    if settings.gemini_api_key:
        gemini = GeminiChatTransport(
            api_key=settings.gemini_api_key,
            default_timeout_seconds=settings.storyboard_timeout_seconds,
        )
    if dashscope is None and gemini is None:
        raise ConfigurationError("No text model provider is configured. Set DASHSCOPE_API_KEY or GEMINI_API_KEY.")
    return ModelInvoker(dashscope=dashscope, gemini=gemini)


def build_fallback_executor() -> FallbackExecutor:
    return FallbackExecutor(build_model_invoker())


def build_story_pipeline(executor: FallbackExecutor | None = None) -> StoryPipeline:
    return StoryPipeline(
        executor or build_fallback_executor(),
        {
            STAGE_OUTLINE: to_candidates(settings.outline_models),
            STAGE_SCRIPT: to_candidates(settings.script_models),
            STAGE_STORYBOARD: to_candidates(settings.storyboard_models),
        },
        timeouts={
            STAGE_OUTLINE: settings.outline_timeout_seconds,
            STAGE_SCRIPT: settings.script_timeout_seconds,
            STAGE_STORYBOARD: settings.storyboard_timeout_seconds,
        },
        fallback_as_error=settings.fallback_as_error,
        json_repair_attempts=settings.json_repair_attempts,
        swap_margin=settings.consistency_swap_margin,
        outlier_threshold=settings.consistency_outlier_threshold,
    )


def build_image_provider(spec: ModelSpec) -> ImageProvider:
    """Pick the adapter for an image model's provider."""
    timeout = settings.image_request_timeout_seconds
    if spec.provider == "dashscope":
        if not settings.dashscope_api_key:
            raise ConfigurationError("DASHSCOPE_API_KEY is not configured")
        return DashScopeImageProvider(
            settings.dashscope_api_key,
            settings.dashscope_api_base,
            timeout_seconds=timeout,
            poller=AsyncPoller(settings.dashscope_poll_interval_seconds, settings.dashscope_poll_max_attempts),
        )
    if spec.provider == "volcanoark":
        if not settings.volcano_ark_api_key:
            raise ConfigurationError("VOLCANO_ARK_API_KEY is not configured")
        return VolcanoArkImageProvider(settings.volcano_ark_api_key, settings.volcano_ark_api_base, timeout_seconds=timeout)
    if spec.provider == "qiniu":
        if not settings.qiniu_api_key:
            raise ConfigurationError("QINIU_API_KEY is not configured")
        return QiniuImageProvider(
            settings.qiniu_api_key,
            settings.qiniu_api_base,
            timeout_seconds=timeout,
            poller=AsyncPoller(settings.qiniu_poll_interval_seconds, settings.qiniu_poll_max_attempts),
        )
    raise ConfigurationError(f"unsupported image provider: {spec.provider}")


def build_render_orchestrator() -> ImageRenderOrchestrator:
    return ImageRenderOrchestrator(
        build_image_provider,
        settings.default_image_model,
        negative_prompt=settings.image_negative_prompt,
        style_prompt=settings.image_style_prompt,
        retry_backoff_seconds=settings.image_retry_backoff_seconds,
        first_frame_delay_seconds=settings.first_frame_delay_seconds,
        inter_frame_delay_seconds=settings.inter_frame_delay_seconds,
        max_reference_images=settings.max_reference_images,
    )


def build_artifact_store() -> LocalArtifactStore:
    if settings.storage_backend != "local":
        raise ConfigurationError(f"unsupported storage backend: {settings.storage_backend}")
    return LocalArtifactStore(settings.media_root, settings.media_url_prefix, ttl_days=settings.artifact_ttl_days)


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max_requests)
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None
