import logging

from fastapi import APIRouter

from comicgen.api.v1.schemas import CleanupResponse, ComicGenerateRequest, ComicGenerateResponse
from comicgen.core.exceptions import GenerationError
from comicgen.core.factory import build_artifact_store, build_render_orchestrator
from comicgen.core.settings import settings
from comicgen.graphs.nodes.consistency import normalize_storyboard
from comicgen.graphs.nodes.render import ImageRenderOrchestrator, RenderRequest
from comicgen.graphs.nodes.validation import validate_storyboard
from comicgen.services.segmentation import script_to_storyboard
from comicgen.services.storage import ArtifactContext, LocalArtifactStore

router = APIRouter(tags=["comics"])
logger = logging.getLogger(__name__)


def _build_orchestrator() -> ImageRenderOrchestrator:
    return build_render_orchestrator()


def _build_store() -> LocalArtifactStore:
    return build_artifact_store()


@router.post("/comic/generate", response_model=ComicGenerateResponse)
async def generate_comic(payload: ComicGenerateRequest):
    if payload.storyboard is not None:
        storyboard = validate_storyboard(payload.storyboard)
    else:
        storyboard = script_to_storyboard(payload.script_segment)
    storyboard = normalize_storyboard(
        storyboard,
        swap_margin=settings.consistency_swap_margin,
        outlier_threshold=settings.consistency_outlier_threshold,
    )
    orchestrator = _build_orchestrator()
    store = _build_store()

    pages = await orchestrator.render(
        RenderRequest(
            storyboard=storyboard,
            start_page_number=payload.start_page_number,
            model=payload.model,
            character_references=payload.character_references,
            reference_image=payload.reference_image,
            global_references=payload.global_references,
            size=payload.size,
        )
    )

    context = ArtifactContext(script_id=payload.script_id, segment_id=payload.segment_id)
    saved_pages = []
    for page in pages:
        try:
            artifact = await store.save(page.image_url, page.page_number, context)
        except (GenerationError, OSError, ValueError) as exc:
            logger.warning("artifact.save_failed page_number=%s error=%s", page.page_number, exc)
            saved_pages.append(page)
            continue
        saved_pages.append(page.model_copy(update={"image_url": artifact.url}))
    return ComicGenerateResponse(pages=saved_pages)


@router.post("/comic/cleanup", response_model=CleanupResponse)
def cleanup_artifacts():
    return CleanupResponse(deleted=_build_store().cleanup_expired())
