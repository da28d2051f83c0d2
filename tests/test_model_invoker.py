"""Tests for single-shot model invocation over DashScope and Gemini."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from comicgen.core.exceptions import ConfigurationError, ModelInvocationError
from comicgen.services.model_invoker import (
    ChatMessage,
    ChatOptions,
    DashScopeChatTransport,
    GeminiChatTransport,
    ModelInvoker,
)

API_URL = "https://dashscope.test/api/v1/services/aigc/text-generation/generation"
MESSAGES = [ChatMessage(role="system", content="be brief"), ChatMessage(role="user", content="hello")]


def _dashscope(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DashScopeChatTransport(api_key="sk-test", api_url=API_URL, http_client=client)


class TestChatOptions:
    def test_merged_applies_known_overrides(self):
        base = ChatOptions(temperature=0.7, max_tokens=100)
        merged = base.merged({"temperature": 0.2, "unknown": 1})
        assert merged.temperature == 0.2
        assert merged.max_tokens == 100

    def test_merged_without_overrides_is_identity(self):
        base = ChatOptions(temperature=0.7)
        assert base.merged(None) is base


class TestDashScopeChatTransport:
    @pytest.mark.anyio
    async def test_posts_messages_and_reads_choice_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"request_id": "req-1", "output": {"choices": [{"message": {"content": "a story"}}]}},
            )

        result = await _dashscope(handler).chat("qwen-max", MESSAGES, ChatOptions(temperature=0.5, top_p=0.9))

        assert result.content == "a story"
        assert result.model == "qwen-max"
        assert result.request_id == "req-1"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "qwen-max"
        assert seen["body"]["input"]["messages"][1] == {"role": "user", "content": "hello"}
        assert seen["body"]["parameters"] == {"result_format": "message", "temperature": 0.5, "top_p": 0.9}

    @pytest.mark.anyio
    async def test_falls_back_to_output_text(self):
        transport = _dashscope(lambda request: httpx.Response(200, json={"output": {"text": "plain"}}))
        result = await transport.chat("qwen-plus", MESSAGES, ChatOptions())
        assert result.content == "plain"

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "status,error_type",
        [(429, "rate_limit"), (401, "auth"), (503, "model_unavailable"), (400, "invalid_request")],
    )
    async def test_http_errors_are_classified(self, status, error_type):
        transport = _dashscope(lambda request: httpx.Response(status, json={"message": "nope"}))
        with pytest.raises(ModelInvocationError) as exc_info:
            await transport.chat("qwen-max", MESSAGES, ChatOptions())
        assert exc_info.value.error_type == error_type
        assert exc_info.value.model == "qwen-max"

    @pytest.mark.anyio
    async def test_empty_content_is_an_error(self):
        transport = _dashscope(lambda request: httpx.Response(200, json={"output": {"choices": []}}))
        with pytest.raises(ModelInvocationError) as exc_info:
            await transport.chat("qwen-max", MESSAGES, ChatOptions())
        assert exc_info.value.error_type == "empty_response"

    @pytest.mark.anyio
    async def test_timeout_is_an_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ModelInvocationError) as exc_info:
            await _dashscope(handler).chat("qwen-max", MESSAGES, ChatOptions(timeout_seconds=1))
        assert exc_info.value.error_type == "timeout"

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            DashScopeChatTransport(api_key=None, api_url=API_URL)


class TestGeminiChatTransport:
    @pytest.mark.anyio
    async def test_system_prompt_becomes_instruction(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(return_value=MagicMock(text="gemini says hi", response_id="g-1"))
        transport = GeminiChatTransport(api_key=None, client=client)

        result = await transport.chat("gemini-2.5-flash", MESSAGES, ChatOptions(temperature=0.3))

        assert result.content == "gemini says hi"
        assert result.request_id == "g-1"
        kwargs = client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-2.5-flash"
        assert kwargs["config"].system_instruction == "be brief"
        assert len(kwargs["contents"]) == 1

    @pytest.mark.anyio
    async def test_sdk_errors_are_wrapped(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(side_effect=RuntimeError("429 RESOURCE_EXHAUSTED"))
        transport = GeminiChatTransport(api_key=None, client=client)

        with pytest.raises(ModelInvocationError) as exc_info:
            await transport.chat("gemini-2.5-flash", MESSAGES, ChatOptions())
        assert exc_info.value.error_type == "rate_limit"


class TestModelInvoker:
    @pytest.mark.anyio
    async def test_routes_gemini_prefix_to_gemini(self):
        dashscope = MagicMock()
        dashscope.chat = AsyncMock()
        gemini = MagicMock()
        gemini.chat = AsyncMock(return_value=MagicMock(content="ok", model="gemini-2.5-flash", request_id="x"))
        invoker = ModelInvoker(dashscope=dashscope, gemini=gemini)

        result = await invoker.invoke("gemini-2.5-flash", MESSAGES)

        assert result.content == "ok"
        dashscope.chat.assert_not_called()
        assert invoker.last_model == "gemini-2.5-flash"

    @pytest.mark.anyio
    async def test_missing_transport_raises(self):
        invoker = ModelInvoker(dashscope=None, gemini=None)
        with pytest.raises(ModelInvocationError) as exc_info:
            await invoker.invoke("qwen-max", MESSAGES)
        assert exc_info.value.error_type == "not_configured"
