"""Wire tests for the image provider adapters and the shared poller."""

import json
from types import SimpleNamespace

import httpx
import pytest

from comicgen.core.exceptions import (
    ImageProviderError,
    TaskCompletedWithoutResultError,
    TaskFailedError,
    TaskTimeoutError,
)
from comicgen.services.image_providers import (
    AsyncPoller,
    DashScopeImageProvider,
    ImageGenerationRequest,
    ImmediateImage,
    PendingTask,
    PollResult,
    QiniuImageProvider,
    TaskStatus,
    VolcanoArkImageProvider,
    normalize_task_status,
)
from comicgen.services.image_providers import poller as poller_module


@pytest.fixture(autouse=True)
def _no_poll_delay(monkeypatch):
    async def fake_sleep(seconds):
        return None

    monkeypatch.setattr(poller_module, "asyncio", SimpleNamespace(sleep=fake_sleep))


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class ScriptedTaskProvider:
    name = "scripted"

    def __init__(self, *results):
        self.results = list(results)
        self.polls = 0

    async def poll(self, task_id):
        self.polls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class TestNormalizeTaskStatus:
    @pytest.mark.parametrize("raw", ["SUCCEEDED", "completed", "success", "Done"])
    def test_succeeded_spellings(self, raw):
        assert normalize_task_status(raw) is TaskStatus.SUCCEEDED

    @pytest.mark.parametrize("raw", ["FAILED", "error", "canceled", "CANCELLED"])
    def test_failed_spellings(self, raw):
        assert normalize_task_status(raw) is TaskStatus.FAILED

    @pytest.mark.parametrize("raw", ["PENDING", "RUNNING", "queued", None, ""])
    def test_everything_else_is_pending(self, raw):
        assert normalize_task_status(raw) is TaskStatus.PENDING


class TestAsyncPoller:
    @pytest.mark.anyio
    async def test_returns_url_on_success(self):
        provider = ScriptedTaskProvider(
            PollResult(status=TaskStatus.PENDING, raw_status="RUNNING"),
            PollResult(status=TaskStatus.SUCCEEDED, image_url="https://img/1.png"),
        )
        url = await AsyncPoller(interval_seconds=0, max_attempts=5).wait(provider, "t-1")
        assert url == "https://img/1.png"
        assert provider.polls == 2

    @pytest.mark.anyio
    async def test_success_without_url_is_protocol_error(self):
        provider = ScriptedTaskProvider(PollResult(status=TaskStatus.SUCCEEDED))
        with pytest.raises(TaskCompletedWithoutResultError):
            await AsyncPoller(max_attempts=5).wait(provider, "t-1")
        assert provider.polls == 1

    @pytest.mark.anyio
    async def test_failed_status_raises(self):
        provider = ScriptedTaskProvider(PollResult(status=TaskStatus.FAILED, raw_status="CANCELED", message="moderation"))
        with pytest.raises(TaskFailedError) as exc_info:
            await AsyncPoller(max_attempts=5).wait(provider, "t-1")
        assert exc_info.value.task_id == "t-1"

    @pytest.mark.anyio
    async def test_attempt_budget_exhaustion_times_out(self):
        provider = ScriptedTaskProvider(*[PollResult(status=TaskStatus.PENDING)] * 3)
        with pytest.raises(TaskTimeoutError) as exc_info:
            await AsyncPoller(max_attempts=3).wait(provider, "t-1")
        assert exc_info.value.attempts == 3

    @pytest.mark.anyio
    async def test_transient_poll_errors_consume_attempts(self):
        provider = ScriptedTaskProvider(
            ImageProviderError("502", provider="scripted"),
            PollResult(status=TaskStatus.SUCCEEDED, image_url="https://img/2.png"),
        )
        assert await AsyncPoller(max_attempts=3).wait(provider, "t-2") == "https://img/2.png"

    @pytest.mark.anyio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_errors_stop_polling_immediately(self, status_code):
        provider = ScriptedTaskProvider(
            ImageProviderError("denied", provider="scripted", status_code=status_code),
            PollResult(status=TaskStatus.SUCCEEDED, image_url="https://img/3.png"),
        )
        with pytest.raises(ImageProviderError) as exc_info:
            await AsyncPoller(max_attempts=40).wait(provider, "t-3")
        assert exc_info.value.status_code == status_code
        assert provider.polls == 1

    @pytest.mark.anyio
    async def test_server_errors_keep_polling(self):
        provider = ScriptedTaskProvider(
            ImageProviderError("busy", provider="scripted", status_code=503),
            PollResult(status=TaskStatus.SUCCEEDED, image_url="https://img/4.png"),
        )
        assert await AsyncPoller(max_attempts=3).wait(provider, "t-4") == "https://img/4.png"


class TestDashScopeImageProvider:
    @pytest.mark.anyio
    async def test_submit_then_poll_until_succeeded(self):
        seen = []
        statuses = iter(["PENDING", "RUNNING", "SUCCEEDED"])

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(200, json={"output": {"task_id": "task-9", "task_status": "PENDING"}})
            status = next(statuses)
            output = {"task_status": status}
            if status == "SUCCEEDED":
                output["results"] = [{"url": "https://dashscope/img.png"}]
            return httpx.Response(200, json={"output": output})

        provider = DashScopeImageProvider(
            "sk-test",
            "https://dashscope.test/api/v1",
            http_client=_client(handler),
            poller=AsyncPoller(interval_seconds=0, max_attempts=5),
        )
        url = await provider.generate(
            ImageGenerationRequest(prompt="a rabbit", model="wan2.2-t2i-plus", negative_prompt="blurry")
        )

        assert url == "https://dashscope/img.png"
        submit = seen[0]
        assert submit.headers["x-dashscope-async"] == "enable"
        assert submit.url.path.endswith("/services/aigc/text2image/image-synthesis")
        body = json.loads(submit.content)
        assert body["input"] == {"prompt": "a rabbit", "negative_prompt": "blurry"}
        assert seen[1].url.path.endswith("/tasks/task-9")
        assert len(seen) == 4

    @pytest.mark.anyio
    async def test_multimodal_model_sends_reference_images_in_messages(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"output": {"choices": [{"message": {"content": [{"image": "https://dashscope/mm.png"}]}}]}},
            )

        provider = DashScopeImageProvider("sk-test", "https://dashscope.test/api/v1", http_client=_client(handler))
        refs = ("https://ref/1.png", "https://ref/2.png", "https://ref/3.png", "https://ref/4.png")
        result = await provider.submit(ImageGenerationRequest(prompt="two friends", model="wan2.6-image", reference_images=refs))

        assert result == ImmediateImage(image_url="https://dashscope/mm.png")
        assert seen["path"].endswith("/services/aigc/image-generation/generation")
        content = seen["body"]["input"]["messages"][0]["content"]
        assert content[0] == {"text": "two friends"}
        assert [c["image"] for c in content[1:]] == list(refs[:3])
        assert seen["body"]["parameters"]["enable_interleave"] is False

    @pytest.mark.anyio
    async def test_http_error_is_provider_error(self):
        provider = DashScopeImageProvider(
            "sk-test",
            "https://dashscope.test/api/v1",
            http_client=_client(lambda request: httpx.Response(400, json={"message": "bad size"})),
        )
        with pytest.raises(ImageProviderError) as exc_info:
            await provider.submit(ImageGenerationRequest(prompt="x", model="wan2.2-t2i-plus"))
        assert exc_info.value.status_code == 400

    @pytest.mark.anyio
    async def test_missing_key_is_provider_error(self):
        provider = DashScopeImageProvider(None, "https://dashscope.test/api/v1")
        with pytest.raises(ImageProviderError):
            await provider.submit(ImageGenerationRequest(prompt="x", model="wan2.2-t2i-plus"))


class TestVolcanoArkImageProvider:
    @pytest.mark.anyio
    async def test_image_comes_back_synchronously(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"url": "https://ark/img.png"}]})

        provider = VolcanoArkImageProvider("ark-key", "https://ark.test/api/v3", http_client=_client(handler))
        url = await provider.generate(
            ImageGenerationRequest(prompt="moon", model="doubao-seedream-4.5", reference_images=("https://ref/a.png",))
        )

        assert url == "https://ark/img.png"
        assert seen["body"]["image"] == "https://ref/a.png"
        assert seen["body"]["size"] == "2048x2048"

    @pytest.mark.anyio
    async def test_error_object_raises(self):
        provider = VolcanoArkImageProvider(
            "ark-key",
            "https://ark.test/api/v3",
            http_client=_client(lambda request: httpx.Response(200, json={"error": {"message": "sensitive"}})),
        )
        with pytest.raises(ImageProviderError):
            await provider.submit(ImageGenerationRequest(prompt="moon", model="doubao-seedream-4.5"))


class TestQiniuImageProvider:
    @pytest.mark.anyio
    async def test_inline_image(self):
        provider = QiniuImageProvider(
            "qn-key",
            "https://qiniu.test/v1",
            http_client=_client(lambda request: httpx.Response(200, json={"data": [{"url": "https://qn/img.png"}]})),
        )
        result = await provider.submit(ImageGenerationRequest(prompt="moon", model="gemini-2.5-flash-image"))
        assert result == ImmediateImage(image_url="https://qn/img.png")

    @pytest.mark.anyio
    async def test_base64_image_becomes_data_url(self):
        provider = QiniuImageProvider(
            "qn-key",
            "https://qiniu.test/v1",
            http_client=_client(lambda request: httpx.Response(200, json={"data": [{"b64_json": "aGk="}]})),
        )
        result = await provider.submit(ImageGenerationRequest(prompt="moon", model="gemini-2.5-flash-image"))
        assert result.image_url == "data:image/png;base64,aGk="

    @pytest.mark.anyio
    async def test_task_id_is_polled_across_endpoints(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            if request.method == "POST":
                return httpx.Response(200, json={"task_id": "qn-1"})
            if request.url.path.endswith("/v1/tasks/qn-1"):
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(
                200,
                json={"data": {"task_status": "succeed", "task_result": {"images": [{"url": "https://qn/task.png"}]}}},
            )

        provider = QiniuImageProvider(
            "qn-key",
            "https://qiniu.test/v1",
            http_client=_client(handler),
            poller=AsyncPoller(interval_seconds=0, max_attempts=3),
        )
        submitted = await provider.submit(ImageGenerationRequest(prompt="moon", model="kling-v1"))
        assert submitted == PendingTask(task_id="qn-1")

        url = await provider.generate(ImageGenerationRequest(prompt="moon", model="kling-v1"))
        assert url == "https://qn/task.png"
        assert "/v1/images/tasks/qn-1" in seen
