from __future__ import annotations

import enum
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from comicgen.core.exceptions import ImageProviderError

logger = logging.getLogger(__name__)


class TaskStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


_SUCCEEDED = {"succeeded", "succeed", "success", "successful", "completed", "complete", "done", "finished"}
_FAILED = {"failed", "failure", "fail", "error", "canceled", "cancelled", "stopped", "expired", "rejected"}


def normalize_task_status(raw: Any) -> TaskStatus:
    """Map a provider's raw status string onto succeeded / failed / pending."""
    value = str(raw or "").strip().lower()
    if value in _SUCCEEDED:
        return TaskStatus.SUCCEEDED
    if value in _FAILED:
        return TaskStatus.FAILED
    return TaskStatus.PENDING


@dataclass(frozen=True)
class ImageGenerationRequest:
    prompt: str
    model: str
    negative_prompt: str | None = None
    reference_images: tuple[str, ...] = ()
    size: str | None = None


@dataclass(frozen=True)
class ImmediateImage:
    image_url: str


@dataclass(frozen=True)
class PendingTask:
    task_id: str


SubmitResult = ImmediateImage | PendingTask


@dataclass(frozen=True)
class PollResult:
    status: TaskStatus
    image_url: str | None = None
    message: str | None = None
    raw_status: str | None = None


@dataclass
class GenerationTask:
    """Provider-side job tracked between submit and its terminal poll."""

    task_id: str
    provider: str
    status: TaskStatus = TaskStatus.PENDING
    result_url: str | None = None
    attempts: int = 0
    history: list[str] = field(default_factory=list)


def dig(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists; None when any hop is missing."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def first_present(data: Any, *paths: tuple) -> Any:
    for path in paths:
        value = dig(data, *path)
        if value not in (None, ""):
            return value
    return None


def normalize_prompt(prompt: str, max_chars: int | None = None) -> str:
    cleaned = re.sub(r"\s+", " ", prompt or "").strip()
    if max_chars is not None and len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars]
    return cleaned


class ImageProvider(ABC):
    """Uniform submit/poll contract over a generation backend."""

    name: str = "unknown"

    def __init__(
        self,
        api_key: str | None,
        api_base: str,
        timeout_seconds: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
        poller=None,
    ):
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._poller = poller

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        if not self._api_key:
            raise ImageProviderError(f"{self.name} api key is not configured", provider=self.name)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        headers.update(extra or {})
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        timeout = timeout or self._timeout_seconds
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, json=json, headers=headers, timeout=timeout)
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
                return await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise ImageProviderError(f"{self.name} request timed out: {url}", provider=self.name) from exc
        except httpx.HTTPError as exc:
            raise ImageProviderError(f"{self.name} transport error: {exc!r}", provider=self.name) from exc

    def _json_or_raise(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            message = None
            if isinstance(body, dict):
                message = first_present(body, ("message",), ("error", "message"), ("error",))
            raise ImageProviderError(
                f"{self.name} returned HTTP {response.status_code}: {message or response.text[:200]}",
                provider=self.name,
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise ImageProviderError(f"{self.name} returned a non-object body", provider=self.name)
        return body

    @abstractmethod
    async def submit(self, request: ImageGenerationRequest) -> SubmitResult:
        """Start a generation; returns the image or a task id to poll."""

    @abstractmethod
    async def poll(self, task_id: str) -> PollResult:
        """Fetch the current state of a submitted task."""

    async def generate(self, request: ImageGenerationRequest) -> str:
        """Submit, then resolve a pending task through the poller; returns the image URL."""
        result = await self.submit(request)
        if isinstance(result, ImmediateImage):
            return result.image_url
        if self._poller is None:
            raise ImageProviderError(f"{self.name} returned task {result.task_id} but has no poller", provider=self.name)
        return await self._poller.wait(self, result.task_id)
