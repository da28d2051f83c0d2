from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypedDict

from langgraph.graph import END, StateGraph

from comicgen.core.exceptions import FallbackExhaustedError, JsonExtractionError, StructuralValidationError
from comicgen.core.metrics import track_stage
from comicgen.core.request_context import log_context
from comicgen.core.telemetry import trace_span
from comicgen.graphs.contracts import (
    ModelCandidate,
    StoryboardData,
    StoryboardFrame,
    StoryOutline,
)
from comicgen.graphs.nodes.consistency import (
    DEFAULT_OUTLIER_THRESHOLD,
    DEFAULT_SWAP_MARGIN,
    normalize_storyboard,
)
from comicgen.graphs.nodes.json_parser import parse_json_object, repair_json_with_model
from comicgen.graphs.nodes.validation import validate_outline, validate_storyboard
from comicgen.prompts.loader import render_prompt
from comicgen.services.fallback import FALLBACK_PROVIDER, SERVICE_BUSY_MESSAGE, FallbackExecutor, StageResult
from comicgen.services.model_invoker import ChatMessage, ChatOptions

logger = logging.getLogger(__name__)

STAGE_OUTLINE = "outline"
STAGE_SCRIPT = "script"
STAGE_STORYBOARD = "storyboard"
STAGES = (STAGE_OUTLINE, STAGE_SCRIPT, STAGE_STORYBOARD)

DEFAULT_TIMEOUTS = {STAGE_OUTLINE: 45.0, STAGE_SCRIPT: 90.0, STAGE_STORYBOARD: 120.0}

_STAGE_OPTIONS = {
    STAGE_OUTLINE: ChatOptions(temperature=0.7, max_tokens=2000, top_p=0.9),
    STAGE_SCRIPT: ChatOptions(temperature=0.8, max_tokens=4000, top_p=0.9),
    STAGE_STORYBOARD: ChatOptions(temperature=0.4, max_tokens=6000, top_p=0.8),
}

MIN_PAGES = 4
MAX_PAGES = 12

OUTLINE_SCHEMA_HINT = '{"overview": {"title", "logline", ...}, "chapters": [...], "characters": [...]}'
STORYBOARD_SCHEMA_HINT = '{"frames": [{"frameId", "imagePrompt", "dialogues": [{"role", "text", "anchor", "xRatio", "yRatio"}], "narration"}]}'


class StoryPipelineState(TypedDict, total=False):
    prompt: str
    history: list[ChatMessage]
    target: str
    outline: StoryOutline | None
    script: str | None
    storyboard: StoryboardData | None
    providers: dict[str, str]
    fallback_stage: str | None


@dataclass
class OutlineResult:
    outline: StoryOutline | None
    providers: dict[str, str] = field(default_factory=dict)
    is_fallback: bool = False
    message: str | None = None


@dataclass
class ScriptResult:
    script: str
    outline: StoryOutline | None = None
    providers: dict[str, str] = field(default_factory=dict)
    is_fallback: bool = False

    @property
    def provider(self) -> str:
        return self.providers.get(STAGE_SCRIPT) or FALLBACK_PROVIDER


@dataclass
class StoryboardResult:
    storyboard: StoryboardData
    outline: StoryOutline | None = None
    script: str | None = None
    providers: dict[str, str] = field(default_factory=dict)
    is_fallback: bool = False

    @property
    def provider(self) -> str:
        return self.providers.get(STAGE_STORYBOARD) or FALLBACK_PROVIDER


def sentinel_storyboard(message: str = SERVICE_BUSY_MESSAGE) -> StoryboardData:
    return StoryboardData(frames=[StoryboardFrame(frame_id=1, image_prompt=message, dialogues=[], narration=message)])


class StoryPipeline:
    """Outline -> script -> storyboard -> normalize, one fallback chain per stage."""

    def __init__(
        self,
        executor: FallbackExecutor,
        candidates: dict[str, list[ModelCandidate]],
        *,
        timeouts: dict[str, float] | None = None,
        fallback_as_error: bool = False,
        json_repair_attempts: int = 1,
        swap_margin: float = DEFAULT_SWAP_MARGIN,
        outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD,
    ):
        self._executor = executor
        self._candidates = candidates
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._fallback_as_error = fallback_as_error
        self._json_repair_attempts = json_repair_attempts
        self._swap_margin = swap_margin
        self._outlier_threshold = outlier_threshold
        self._graph = self._build_graph()

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    def _options(self, stage: str) -> ChatOptions:
        return _STAGE_OPTIONS[stage].merged({"timeout_seconds": self._timeouts[stage]})

    @staticmethod
    def _messages(system: str, history: list[ChatMessage], user: str) -> list[ChatMessage]:
        return [ChatMessage(role="system", content=system), *history, ChatMessage(role="user", content=user)]

    def _on_fallback(self, stage: str) -> None:
        if self._fallback_as_error:
            raise FallbackExhaustedError(stage)
        logger.warning("stage_fallback stage=%s returning sentinel", stage)

    async def _decode(self, stage: str, result: StageResult, schema_hint: str) -> dict:
        try:
            return parse_json_object(result.content)
        except JsonExtractionError as exc:
            logger.warning("stage.json_invalid stage=%s model=%s error=%s", stage, result.model, exc)
            repaired = None
            if self._json_repair_attempts > 0:
                repaired = await repair_json_with_model(
                    self._executor,
                    stage,
                    self._candidates.get(stage, []),
                    result.content,
                    expected_schema=schema_hint,
                    max_repair_attempts=self._json_repair_attempts,
                    timeout_seconds=self._timeouts[stage],
                )
            if repaired is None:
                raise StructuralValidationError(f"{stage} output is not valid JSON", path="$") from exc
            return repaired

    def _run_stage(self, stage: str, body: Callable):
        async def node(state: StoryPipelineState) -> dict:
            start = time.perf_counter()
            with log_context(stage=stage), track_stage(stage), trace_span(f"graph.{stage}", stage=stage) as span:
                update = await body(state)
                span.set_attribute("model", (update.get("providers") or {}).get(stage) or "")
                span.set_attribute("fallback", bool(update.get("fallback_stage")))
                logger.info(
                    "stage_complete stage=%s model=%s duration_ms=%.1f",
                    stage,
                    (update.get("providers") or {}).get(stage),
                    (time.perf_counter() - start) * 1000,
                )
            return update

        return node

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    async def _outline(self, state: StoryPipelineState) -> dict:
        messages = self._messages(
            render_prompt("prompt_outline_system", min_pages=MIN_PAGES, max_pages=MAX_PAGES),
            state.get("history") or [],
            render_prompt("prompt_outline_user", story_prompt=state["prompt"]),
        )
        result = await self._executor.run(
            STAGE_OUTLINE, self._candidates.get(STAGE_OUTLINE, []), messages, self._options(STAGE_OUTLINE)
        )
        providers = {**(state.get("providers") or {}), STAGE_OUTLINE: result.provider}
        if result.is_fallback:
            self._on_fallback(STAGE_OUTLINE)
            return {"providers": providers, "fallback_stage": STAGE_OUTLINE}

        raw = await self._decode(STAGE_OUTLINE, result, OUTLINE_SCHEMA_HINT)
        return {"outline": validate_outline(raw), "providers": providers}

    async def _script(self, state: StoryPipelineState) -> dict:
        outline = state["outline"]
        messages = self._messages(
            render_prompt("prompt_script_system"),
            state.get("history") or [],
            render_prompt(
                "prompt_script_user",
                outline_json=json.dumps(outline.to_wire(), ensure_ascii=False, indent=2),
                story_prompt=state["prompt"],
            ),
        )
        result = await self._executor.run(
            STAGE_SCRIPT, self._candidates.get(STAGE_SCRIPT, []), messages, self._options(STAGE_SCRIPT)
        )
        providers = {**(state.get("providers") or {}), STAGE_SCRIPT: result.provider}
        if result.is_fallback:
            self._on_fallback(STAGE_SCRIPT)
            return {"providers": providers, "fallback_stage": STAGE_SCRIPT}
        return {"script": result.content.strip(), "providers": providers}

    async def _storyboard(self, state: StoryPipelineState) -> dict:
        messages = self._messages(
            render_prompt("prompt_storyboard_system"),
            state.get("history") or [],
            render_prompt(
                "prompt_storyboard_user",
                outline_json=json.dumps(state["outline"].to_wire(), ensure_ascii=False, indent=2),
                script_text=state["script"],
            ),
        )
        result = await self._executor.run(
            STAGE_STORYBOARD,
            self._candidates.get(STAGE_STORYBOARD, []),
            messages,
            self._options(STAGE_STORYBOARD),
        )
        providers = {**(state.get("providers") or {}), STAGE_STORYBOARD: result.provider}
        if result.is_fallback:
            self._on_fallback(STAGE_STORYBOARD)
            return {"providers": providers, "fallback_stage": STAGE_STORYBOARD}

        raw = await self._decode(STAGE_STORYBOARD, result, STORYBOARD_SCHEMA_HINT)
        return {"storyboard": validate_storyboard(raw), "providers": providers}

    async def _normalize(self, state: StoryPipelineState) -> dict:
        with trace_span("graph.normalize", frames=len(state["storyboard"].frames)):
            storyboard = normalize_storyboard(
                state["storyboard"],
                swap_margin=self._swap_margin,
                outlier_threshold=self._outlier_threshold,
            )
        return {"storyboard": storyboard}

    @staticmethod
    def _next_after(stage: str, following: str):
        def route(state: StoryPipelineState) -> str:
            if state.get("fallback_stage") or state.get("target") == stage:
                return END
            return following

        return route

    @staticmethod
    def _route_storyboard(state: StoryPipelineState) -> str:
        return END if state.get("fallback_stage") else "normalize"

    def _build_graph(self):
        graph = StateGraph(StoryPipelineState)
        graph.add_node(STAGE_OUTLINE, self._run_stage(STAGE_OUTLINE, self._outline))
        graph.add_node(STAGE_SCRIPT, self._run_stage(STAGE_SCRIPT, self._script))
        graph.add_node(STAGE_STORYBOARD, self._run_stage(STAGE_STORYBOARD, self._storyboard))
        graph.add_node("normalize", self._normalize)

        graph.set_entry_point(STAGE_OUTLINE)
        graph.add_conditional_edges(
            STAGE_OUTLINE,
            self._next_after(STAGE_OUTLINE, STAGE_SCRIPT),
            {STAGE_SCRIPT: STAGE_SCRIPT, END: END},
        )
        graph.add_conditional_edges(
            STAGE_SCRIPT,
            self._next_after(STAGE_SCRIPT, STAGE_STORYBOARD),
            {STAGE_STORYBOARD: STAGE_STORYBOARD, END: END},
        )
        graph.add_conditional_edges(
            STAGE_STORYBOARD,
            self._route_storyboard,
            {"normalize": "normalize", END: END},
        )
        graph.add_edge("normalize", END)
        return graph.compile()

    async def _invoke(self, prompt: str, history: list[ChatMessage] | None, target: str) -> StoryPipelineState:
        state: StoryPipelineState = {
            "prompt": prompt,
            "history": list(history or []),
            "target": target,
            "providers": {},
        }
        return await self._graph.ainvoke(state)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate_outline(self, prompt: str, history: list[ChatMessage] | None = None) -> OutlineResult:
        state = await self._invoke(prompt, history, STAGE_OUTLINE)
        if state.get("fallback_stage"):
            return OutlineResult(
                outline=None, providers=state["providers"], is_fallback=True, message=SERVICE_BUSY_MESSAGE
            )
        return OutlineResult(outline=state["outline"], providers=state["providers"])

    async def generate_script(self, prompt: str, history: list[ChatMessage] | None = None) -> ScriptResult:
        state = await self._invoke(prompt, history, STAGE_SCRIPT)
        if state.get("fallback_stage"):
            return ScriptResult(
                script=SERVICE_BUSY_MESSAGE,
                outline=state.get("outline"),
                providers=state["providers"],
                is_fallback=True,
            )
        return ScriptResult(script=state["script"], outline=state["outline"], providers=state["providers"])

    async def generate_storyboard(self, prompt: str, history: list[ChatMessage] | None = None) -> StoryboardResult:
        state = await self._invoke(prompt, history, STAGE_STORYBOARD)
        if state.get("fallback_stage"):
            return StoryboardResult(
                storyboard=sentinel_storyboard(),
                outline=state.get("outline"),
                script=state.get("script"),
                providers=state["providers"],
                is_fallback=True,
            )
        return StoryboardResult(
            storyboard=state["storyboard"],
            outline=state["outline"],
            script=state["script"],
            providers=state["providers"],
        )

    async def continue_conversation(self, prompt: str, history: list[ChatMessage]) -> ScriptResult:
        """Revise the latest script in ``history`` according to ``prompt``."""
        messages = self._messages(render_prompt("prompt_continue_system"), history, prompt)
        with log_context(stage=STAGE_SCRIPT), track_stage("continue"):
            result = await self._executor.run(
                STAGE_SCRIPT, self._candidates.get(STAGE_SCRIPT, []), messages, self._options(STAGE_SCRIPT)
            )
        if result.is_fallback:
            self._on_fallback(STAGE_SCRIPT)
            return ScriptResult(script=SERVICE_BUSY_MESSAGE, providers={STAGE_SCRIPT: FALLBACK_PROVIDER}, is_fallback=True)
        logger.info("stage_complete stage=continue model=%s", result.model)
        return ScriptResult(script=result.content.strip(), providers={STAGE_SCRIPT: result.provider})
