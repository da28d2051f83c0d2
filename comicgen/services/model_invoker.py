import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

import httpx
from google import genai
from google.genai import types

from comicgen.core.exceptions import ConfigurationError, ModelInvocationError
from comicgen.core.metrics import track_model_call

logger = logging.getLogger(__name__)

GEMINI_MODEL_PREFIX = "gemini-"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    timeout_seconds: float | None = None

    def merged(self, overrides: dict[str, Any] | None) -> "ChatOptions":
        """Return a copy with candidate-level overrides applied (unknown keys ignored)."""
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__ and v is not None}
        return replace(self, **known)


@dataclass(frozen=True)
class ChatResult:
    content: str
    model: str
    request_id: str | None = None


def _classify_status(status_code: int) -> str:
    if status_code == 429:
        return "rate_limit"
    if status_code in (401, 403):
        return "auth"
    if status_code >= 500:
        return "model_unavailable"
    return "invalid_request"


def _classify_error_text(error_text: str) -> str:
    lowered = error_text.lower()
    if "resource_exhausted" in lowered or "429" in lowered:
        return "rate_limit"
    if "safety" in lowered or "blocked" in lowered:
        return "content_filter"
    if "timeout" in lowered or "deadline" in lowered:
        return "timeout"
    if "unavailable" in lowered or "503" in lowered:
        return "model_unavailable"
    if "invalid" in lowered or "400" in lowered:
        return "invalid_request"
    return "unknown"


class DashScopeChatTransport:
    """Chat completions against the DashScope text-generation endpoint."""

    def __init__(
        self,
        api_key: str | None,
        api_url: str,
        default_timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise ConfigurationError("DASHSCOPE_API_KEY (or QWEN_API_KEY) is not configured")
        self._api_key = api_key
        self._api_url = api_url
        self._default_timeout_seconds = default_timeout_seconds
        self._http_client = http_client

    def _build_payload(self, model: str, messages: list[ChatMessage], options: ChatOptions) -> dict[str, Any]:
        parameters: dict[str, Any] = {"result_format": "message"}
        if options.temperature is not None:
            parameters["temperature"] = options.temperature
        if options.max_tokens is not None:
            parameters["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            parameters["top_p"] = options.top_p
        return {
            "model": model,
            "input": {"messages": [m.to_wire() for m in messages]},
            "parameters": parameters,
        }

    @staticmethod
    def _extract_content(body: dict[str, Any]) -> str:
        output = body.get("output") or {}
        choices = output.get("choices") or []
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        text = output.get("text")
        if isinstance(text, str):
            return text
        return ""

    async def chat(self, model: str, messages: list[ChatMessage], options: ChatOptions) -> ChatResult:
        timeout = options.timeout_seconds or self._default_timeout_seconds
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        payload = self._build_payload(model, messages, options)

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._api_url, json=payload, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
                    response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ModelInvocationError(
                f"dashscope request timed out after {timeout}s", model=model, error_type="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise ModelInvocationError(f"dashscope transport error: {exc!r}", model=model, error_type="transport") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        request_id = body.get("request_id") if isinstance(body, dict) else None

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise ModelInvocationError(
                f"dashscope returned HTTP {response.status_code}: {message or response.text[:200]}",
                model=model,
                request_id=request_id,
                error_type=_classify_status(response.status_code),
            )

        content = self._extract_content(body) if isinstance(body, dict) else ""
        if not content.strip():
            raise ModelInvocationError(
                "dashscope returned empty content",
                model=model,
                request_id=request_id,
                error_type="empty_response",
            )
        return ChatResult(content=content, model=model, request_id=request_id)


class GeminiChatTransport:
    """Chat completions through google-genai for gemini-* candidates."""

    def __init__(self, api_key: str | None, default_timeout_seconds: float = 60.0, client: Any | None = None):
        if client is None and not api_key:
            raise ConfigurationError("GEMINI_API_KEY is not configured")
        self._client = client or genai.Client(api_key=api_key)
        self._default_timeout_seconds = default_timeout_seconds

    @staticmethod
    def _build_contents(messages: list[ChatMessage]) -> tuple[str | None, list[types.Content]]:
        system_parts = [m.content for m in messages if m.role == "system"]
        contents = [
            types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[types.Part.from_text(text=m.content)],
            )
            for m in messages
            if m.role != "system"
        ]
        return ("\n\n".join(system_parts) or None), contents

    async def chat(self, model: str, messages: list[ChatMessage], options: ChatOptions) -> ChatResult:
        timeout = options.timeout_seconds or self._default_timeout_seconds
        system_instruction, contents = self._build_contents(messages)
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
            top_p=options.top_p,
        )
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(model=model, contents=contents, config=config),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ModelInvocationError(
                f"gemini request timed out after {timeout}s", model=model, error_type="timeout"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise ModelInvocationError(
                f"gemini request failed: {exc!r}",
                model=model,
                error_type=_classify_error_text(str(exc)),
            ) from exc

        text = getattr(response, "text", None) or ""
        request_id = getattr(response, "response_id", None)
        if not text.strip():
            raise ModelInvocationError(
                "gemini returned empty content",
                model=model,
                request_id=request_id,
                error_type="empty_response",
            )
        return ChatResult(content=text, model=model, request_id=request_id)


class ModelInvoker:
    """Issue exactly one chat call to a named model; no retry, no fallback."""

    def __init__(
        self,
        dashscope: DashScopeChatTransport | None = None,
        gemini: GeminiChatTransport | None = None,
    ):
        self._dashscope = dashscope
        self._gemini = gemini
        self.last_model: str | None = None
        self.last_request_id: str | None = None

    def _transport_for(self, model: str):
        if model.startswith(GEMINI_MODEL_PREFIX):
            transport = self._gemini
        else:
            transport = self._dashscope
        if transport is None:
            raise ModelInvocationError(
                f"no configured transport for model {model}",
                model=model,
                error_type="not_configured",
            )
        return transport

    async def invoke(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions | None = None,
    ) -> ChatResult:
        options = options or ChatOptions()
        transport = self._transport_for(model)
        with track_model_call(model):
            result = await transport.chat(model, messages, options)
        self.last_model = result.model
        self.last_request_id = result.request_id
        logger.debug(
            "model.invoke complete model=%s request_id=%s chars=%s",
            result.model,
            result.request_id,
            len(result.content),
        )
        return result
