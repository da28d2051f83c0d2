"""
Application-level exception types.

Stage errors (validation, model invocation, fallback exhaustion) and render
errors (provider, polling, first-page) stay distinct so logs can tell model
flakiness apart from provider flakiness. The HTTP boundary masks all of them.
"""

from __future__ import annotations


class AppError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.detail = detail or message
        super().__init__(message)


class ConfigurationError(AppError):
    """Raised when required configuration is missing or invalid."""


class StructuralValidationError(AppError):
    """Raised when model output lacks a required object, array or field."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, detail="Generated content did not match the expected structure")
        self.path = path


class JsonExtractionError(StructuralValidationError):
    """Raised when no JSON object can be decoded from model output."""


class ModelInvocationError(AppError):
    """Raised when a single model call fails (transport, HTTP status or empty content)."""

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        request_id: str | None = None,
        error_type: str = "unknown",
    ) -> None:
        super().__init__(message)
        self.model = model
        self.request_id = request_id
        self.error_type = error_type


class FallbackExhaustedError(AppError):
    """Raised when every candidate of a stage failed and the caller refuses the sentinel."""

    def __init__(self, stage: str) -> None:
        super().__init__(
            f"all model candidates failed for stage {stage}",
            detail="The service is busy, please try again later",
        )
        self.stage = stage


class GenerationError(AppError):
    """Raised when image generation fails."""


class ImageProviderError(GenerationError):
    """Raised on an HTTP or protocol failure of an image provider."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TaskTimeoutError(ImageProviderError):
    """Raised when polling ran out of attempts without a terminal status."""

    def __init__(self, task_id: str, attempts: int, *, provider: str | None = None) -> None:
        super().__init__(f"task {task_id} not finished after {attempts} polls", provider=provider)
        self.task_id = task_id
        self.attempts = attempts


class TaskFailedError(ImageProviderError):
    """Raised when the provider reports a failed or cancelled task."""

    def __init__(
        self,
        task_id: str,
        status: str,
        message: str | None = None,
        *,
        provider: str | None = None,
    ) -> None:
        super().__init__(f"task {task_id} ended with status {status}: {message or 'no message'}", provider=provider)
        self.task_id = task_id
        self.status = status
        self.provider_message = message


class TaskCompletedWithoutResultError(ImageProviderError):
    """Raised when a task reports success but carries no image URL."""

    def __init__(self, task_id: str, *, provider: str | None = None) -> None:
        super().__init__(f"task {task_id} succeeded without an image url", provider=provider)
        self.task_id = task_id


class FirstPageFatalError(GenerationError):
    """Raised when the first frame could not be rendered; no pages are returned."""

    def __init__(self, frame_id: int, cause: Exception | None = None) -> None:
        super().__init__(
            f"first frame {frame_id} failed after all retries: {cause!r}",
            detail="The cover page could not be generated",
        )
        self.frame_id = frame_id
        self.cause = cause


class RenderFailedError(GenerationError):
    """Raised when no frame at all could be rendered."""


class RateLimitExceededError(AppError):
    """Raised when a client exceeded its request budget for the current window."""

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            f"rate limit exceeded, retry after {retry_after_seconds}s",
            detail="Too many requests, please try again later",
        )
        self.retry_after_seconds = retry_after_seconds
