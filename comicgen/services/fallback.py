from __future__ import annotations

import logging
from dataclasses import dataclass

from comicgen.core.metrics import record_fallback_exhausted
from comicgen.core.telemetry import trace_span
from comicgen.graphs.contracts import ModelCandidate
from comicgen.services.model_invoker import ChatMessage, ChatOptions, ModelInvoker

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "fallback"
SERVICE_BUSY_MESSAGE = "The story service is busy right now. Please try again in a moment."


@dataclass(frozen=True)
class StageResult:
    content: str
    model: str | None
    provider: str
    is_fallback: bool = False


def fallback_result() -> StageResult:
    return StageResult(
        content=SERVICE_BUSY_MESSAGE,
        model=None,
        provider=FALLBACK_PROVIDER,
        is_fallback=True,
    )


def to_candidates(entries: list[str | dict | ModelCandidate]) -> list[ModelCandidate]:
    """Accept plain model names, option dicts or ready candidates."""
    candidates: list[ModelCandidate] = []
    for entry in entries:
        if isinstance(entry, ModelCandidate):
            candidates.append(entry)
        elif isinstance(entry, str):
            candidates.append(ModelCandidate(model=entry))
        else:
            candidates.append(ModelCandidate.model_validate(entry))
    return candidates


class FallbackExecutor:
    """Try a stage's ordered candidates once each; never raises."""

    def __init__(self, invoker: ModelInvoker):
        self._invoker = invoker

    async def run(
        self,
        stage: str,
        candidates: list[ModelCandidate],
        messages: list[ChatMessage],
        options: ChatOptions | None = None,
    ) -> StageResult:
        shared = options or ChatOptions()
        for index, candidate in enumerate(candidates):
            with trace_span("model.candidate", stage=stage, model=candidate.model, position=index + 1) as span:
                try:
                    result = await self._invoker.invoke(candidate.model, messages, shared.merged(candidate.options))
                except Exception as exc:  # noqa: BLE001
                    error_type = getattr(exc, "error_type", type(exc).__name__)
                    span.set_attribute("error_type", error_type)
                    logger.warning(
                        "stage.candidate_failed stage=%s model=%s position=%s/%s error_type=%s error=%s",
                        stage,
                        candidate.model,
                        index + 1,
                        len(candidates),
                        error_type,
                        exc,
                    )
                    continue
            if index > 0:
                logger.info("stage.fallback_used stage=%s model=%s position=%s", stage, result.model, index + 1)
            return StageResult(content=result.content, model=result.model, provider=result.model)

        logger.error(
            "stage.fallback_exhausted stage=%s candidates=%s",
            stage,
            [c.model for c in candidates],
        )
        record_fallback_exhausted(stage)
        return fallback_result()
