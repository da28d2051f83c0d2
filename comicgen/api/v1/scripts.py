import logging

from fastapi import APIRouter

from comicgen.api.v1.schemas import ScriptGenerateRequest, ScriptGenerateResponse
from comicgen.core.factory import build_story_pipeline
from comicgen.graphs.story_build import STAGE_OUTLINE, STAGE_SCRIPT, STAGE_STORYBOARD, StoryPipeline
from comicgen.services.fallback import FALLBACK_PROVIDER
from comicgen.services.model_invoker import ChatMessage

router = APIRouter(tags=["scripts"])
logger = logging.getLogger(__name__)


def _build_pipeline() -> StoryPipeline:
    return build_story_pipeline()


@router.post("/script/generate", response_model=ScriptGenerateResponse)
async def generate_script(payload: ScriptGenerateRequest):
    pipeline = _build_pipeline()
    history = [ChatMessage(role=m.role, content=m.content) for m in payload.conversation_history]

    if history and payload.output_format == "script" and payload.stage is None:
        logger.info("script.continue history_messages=%s", len(history))
        result = await pipeline.continue_conversation(payload.prompt, history)
        return ScriptGenerateResponse(
            script=result.script,
            provider=result.provider,
            providers=result.providers,
            is_fallback=result.is_fallback,
        )

    if payload.stage == STAGE_OUTLINE:
        outline = await pipeline.generate_outline(payload.prompt, history)
        return ScriptGenerateResponse(
            outline=outline.outline,
            provider=outline.providers.get(STAGE_OUTLINE, FALLBACK_PROVIDER),
            providers=outline.providers,
            is_fallback=outline.is_fallback,
            message=outline.message,
        )

    if payload.stage == STAGE_STORYBOARD or (payload.stage is None and payload.output_format == "storyboard"):
        board = await pipeline.generate_storyboard(payload.prompt, history)
        return ScriptGenerateResponse(
            outline=board.outline,
            script=board.script,
            storyboard=board.storyboard.to_wire(),
            provider=board.provider,
            providers=board.providers,
            is_fallback=board.is_fallback,
        )

    result = await pipeline.generate_script(payload.prompt, history)
    return ScriptGenerateResponse(
        outline=result.outline,
        script=result.script,
        provider=result.provider,
        providers=result.providers,
        is_fallback=result.is_fallback,
    )
