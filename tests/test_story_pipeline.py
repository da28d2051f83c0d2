"""Tests for the outline -> script -> storyboard pipeline graph."""

import json

import pytest

from comicgen.core.exceptions import FallbackExhaustedError, StructuralValidationError
from comicgen.graphs.contracts import ModelCandidate
from comicgen.graphs import story_build
from comicgen.graphs.story_build import StoryPipeline
from comicgen.services.fallback import FALLBACK_PROVIDER, SERVICE_BUSY_MESSAGE, StageResult, fallback_result
from comicgen.services.model_invoker import ChatMessage

OUTLINE = {
    "overview": {"title": "Momo's Moon", "logline": "A rabbit flies to the moon"},
    "chapters": [{"chapterId": 1, "title": "Launch", "summary": "Momo builds a rocket"}],
    "characters": [
        {"name": "Momo", "role": "hero", "description": "small rabbit"},
        {"name": "Pip", "role": "friend", "description": "a sparrow"},
    ],
}

SCRIPT = "Page 1:\n[Scene: Momo and Pip in the garden]\nMomo: Let's go!\n"

STORYBOARD = {
    "frames": [
        {
            "frameId": 1,
            "imagePrompt": "garden",
            "dialogues": [
                {"role": "Momo", "text": "Hi", "anchor": "left", "xRatio": 0.25, "yRatio": 0.3},
                {"role": "Pip", "text": "Hey", "anchor": "right", "xRatio": 0.75, "yRatio": 0.3},
            ],
        },
        {
            "frameId": 2,
            "imagePrompt": "rocket",
            "dialogues": [
                {"role": "Momo", "text": "Ready", "anchor": "left", "xRatio": 0.25, "yRatio": 0.3},
                {"role": "Pip", "text": "Go", "anchor": "right", "xRatio": 0.75, "yRatio": 0.3},
            ],
        },
        {
            "frameId": 3,
            "imagePrompt": "moon",
            "dialogues": [
                {"role": "Momo", "text": "Wow", "anchor": "left", "xRatio": 0.78, "yRatio": 0.2},
                {"role": "Pip", "text": "Look", "anchor": "right", "xRatio": 0.22, "yRatio": 0.6},
            ],
        },
    ]
}


def _ok(content, model="qwen-max"):
    return StageResult(content=content, model=model, provider=model)


class ScriptedExecutor:
    """Stands in for FallbackExecutor; returns queued results per stage."""

    def __init__(self, responses):
        self.responses = {stage: list(results) for stage, results in responses.items()}
        self.calls = []

    async def run(self, stage, candidates, messages, options=None):
        self.calls.append({"stage": stage, "candidates": candidates, "messages": messages, "options": options})
        return self.responses[stage].pop(0)

    def stages(self):
        return [call["stage"] for call in self.calls]


def _pipeline(executor, **kwargs):
    candidates = {stage: [ModelCandidate(model="qwen-max")] for stage in ("outline", "script", "storyboard")}
    return StoryPipeline(executor, candidates, **kwargs)


def _full_run(**overrides):
    responses = {
        "outline": [_ok(json.dumps(OUTLINE))],
        "script": [_ok(SCRIPT, model="deepseek-v3")],
        "storyboard": [_ok("```json\n" + json.dumps(STORYBOARD) + "\n```")],
    }
    responses.update(overrides)
    return ScriptedExecutor(responses)


class TestGenerateStoryboard:
    @pytest.mark.anyio
    async def test_runs_all_stages_in_order(self):
        executor = _full_run()
        result = await _pipeline(executor).generate_storyboard("a rabbit goes to the moon")

        assert executor.stages() == ["outline", "script", "storyboard"]
        assert result.outline.overview.title == "Momo's Moon"
        assert result.script == SCRIPT.strip()
        assert len(result.storyboard.frames) == 3
        assert result.providers == {"outline": "qwen-max", "script": "deepseek-v3", "storyboard": "qwen-max"}
        assert result.provider == "qwen-max"
        assert not result.is_fallback

    @pytest.mark.anyio
    async def test_storyboard_is_normalized(self):
        result = await _pipeline(_full_run()).generate_storyboard("moon")

        momo, pip = result.storyboard.frames[2].dialogues
        assert (momo.role, momo.text) == ("Momo", "Wow")
        assert momo.x_ratio == pytest.approx(0.22)
        assert momo.anchor == "left"
        assert pip.x_ratio == pytest.approx(0.78)
        assert pip.anchor == "right"

    @pytest.mark.anyio
    async def test_normalize_node_runs_once_with_configured_thresholds(self, monkeypatch):
        calls = []
        real = story_build.normalize_storyboard

        def spy(storyboard, **kwargs):
            calls.append(kwargs)
            return real(storyboard, **kwargs)

        monkeypatch.setattr(story_build, "normalize_storyboard", spy)
        await _pipeline(_full_run(), swap_margin=0.05, outlier_threshold=0.4).generate_storyboard("moon")

        assert calls == [{"swap_margin": 0.05, "outlier_threshold": 0.4}]

    @pytest.mark.anyio
    async def test_history_is_threaded_between_system_and_user(self):
        executor = _full_run()
        history = [ChatMessage(role="user", content="earlier idea"), ChatMessage(role="assistant", content="earlier reply")]

        await _pipeline(executor).generate_storyboard("moon", history)

        for call in executor.calls:
            roles = [m.role for m in call["messages"]]
            assert roles == ["system", "user", "assistant", "user"]
            assert call["messages"][1].content == "earlier idea"
        assert "moon" in executor.calls[0]["messages"][-1].content

    @pytest.mark.anyio
    async def test_stage_timeouts_are_passed_per_call(self):
        executor = _full_run()
        await _pipeline(executor, timeouts={"script": 12.0}).generate_storyboard("moon")

        timeouts = {call["stage"]: call["options"].timeout_seconds for call in executor.calls}
        assert timeouts == {"outline": 45.0, "script": 12.0, "storyboard": 120.0}

    @pytest.mark.anyio
    async def test_outline_feeds_script_and_storyboard_prompts(self):
        executor = _full_run()
        await _pipeline(executor).generate_storyboard("moon")

        assert "Momo's Moon" in executor.calls[1]["messages"][-1].content
        assert SCRIPT.strip() in executor.calls[2]["messages"][-1].content


class TestStageSelection:
    @pytest.mark.anyio
    async def test_generate_outline_stops_after_outline(self):
        executor = _full_run()
        result = await _pipeline(executor).generate_outline("moon")

        assert executor.stages() == ["outline"]
        assert result.outline.characters[0].name == "Momo"
        assert result.providers == {"outline": "qwen-max"}

    @pytest.mark.anyio
    async def test_generate_script_stops_after_script(self):
        executor = _full_run()
        result = await _pipeline(executor).generate_script("moon")

        assert executor.stages() == ["outline", "script"]
        assert result.script.startswith("Page 1:")
        assert result.provider == "deepseek-v3"

    @pytest.mark.anyio
    async def test_continue_conversation_is_single_script_call(self):
        executor = ScriptedExecutor({"script": [_ok("Page 1:\nrevised", model="qwen-plus")]})
        history = [ChatMessage(role="assistant", content=SCRIPT)]

        result = await _pipeline(executor).continue_conversation("make it funnier", history)

        assert executor.stages() == ["script"]
        assert result.script == "Page 1:\nrevised"
        assert result.provider == "qwen-plus"
        messages = executor.calls[0]["messages"]
        assert [m.role for m in messages] == ["system", "assistant", "user"]
        assert messages[-1].content == "make it funnier"


class TestFallbackPolicy:
    @pytest.mark.anyio
    async def test_storyboard_fallback_returns_sentinel(self):
        executor = _full_run(storyboard=[fallback_result()])
        result = await _pipeline(executor).generate_storyboard("moon")

        assert result.is_fallback
        assert len(result.storyboard.frames) == 1
        frame = result.storyboard.frames[0]
        assert frame.image_prompt == SERVICE_BUSY_MESSAGE
        assert frame.narration == SERVICE_BUSY_MESSAGE
        assert frame.dialogues == []
        assert result.providers["storyboard"] == FALLBACK_PROVIDER
        assert result.provider == FALLBACK_PROVIDER

    @pytest.mark.anyio
    async def test_storyboard_fallback_skips_normalization(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("sentinel storyboard must not be normalized")

        monkeypatch.setattr(story_build, "normalize_storyboard", fail)
        result = await _pipeline(_full_run(storyboard=[fallback_result()])).generate_storyboard("moon")
        assert result.is_fallback

    @pytest.mark.anyio
    async def test_outline_fallback_stops_the_pipeline(self):
        executor = _full_run(outline=[fallback_result()])
        result = await _pipeline(executor).generate_storyboard("moon")

        assert executor.stages() == ["outline"]
        assert result.is_fallback
        assert result.providers == {"outline": FALLBACK_PROVIDER}

    @pytest.mark.anyio
    async def test_fallback_as_error_raises(self):
        executor = _full_run(script=[fallback_result()])
        with pytest.raises(FallbackExhaustedError):
            await _pipeline(executor, fallback_as_error=True).generate_storyboard("moon")

    @pytest.mark.anyio
    async def test_continue_conversation_fallback(self):
        executor = ScriptedExecutor({"script": [fallback_result()]})
        result = await _pipeline(executor).continue_conversation("again", [])
        assert result.is_fallback
        assert result.script == SERVICE_BUSY_MESSAGE


class TestStructuralFailures:
    @pytest.mark.anyio
    async def test_missing_frames_aborts_without_repair(self):
        executor = _full_run(storyboard=[_ok(json.dumps({"pages": []}))])
        with pytest.raises(StructuralValidationError):
            await _pipeline(executor).generate_storyboard("moon")
        assert "storyboard_repair" not in executor.stages()

    @pytest.mark.anyio
    async def test_invalid_json_is_repaired_once(self):
        executor = _full_run(
            storyboard=[_ok('{"frames": [{"frameId": 1 "imagePrompt": "x"}]}')],
            storyboard_repair=[_ok(json.dumps({"frames": [{"frameId": 1, "imagePrompt": "x"}]}))],
        )
        result = await _pipeline(executor).generate_storyboard("moon")

        assert executor.stages() == ["outline", "script", "storyboard", "storyboard_repair"]
        assert result.storyboard.frames[0].image_prompt == "x"

    @pytest.mark.anyio
    async def test_unrepairable_json_raises(self):
        executor = _full_run(
            storyboard=[_ok("I cannot do that")],
            storyboard_repair=[_ok("still not json")],
        )
        with pytest.raises(StructuralValidationError):
            await _pipeline(executor).generate_storyboard("moon")

    @pytest.mark.anyio
    async def test_repair_disabled_raises_immediately(self):
        executor = _full_run(outline=[_ok("nope")])
        with pytest.raises(StructuralValidationError):
            await _pipeline(executor, json_repair_attempts=0).generate_outline("moon")
        assert executor.stages() == ["outline"]

    @pytest.mark.anyio
    async def test_outline_missing_characters_aborts(self):
        broken = dict(OUTLINE, characters=[])
        executor = _full_run(outline=[_ok(json.dumps(broken))])
        with pytest.raises(StructuralValidationError):
            await _pipeline(executor).generate_storyboard("moon")
        assert executor.stages() == ["outline"]
