"""Stage-output validators.

Hard-fail on structural absence, repair value-range noise. All repair of raw
model fields happens here; downstream code only sees validated contracts.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from comicgen.core.exceptions import JsonExtractionError, StructuralValidationError
from comicgen.core.metrics import record_dialogue_repair
from comicgen.graphs.contracts import (
    DEFAULT_X_RATIO,
    DEFAULT_Y_RATIO,
    DialogueItem,
    OutlineChapter,
    OutlineCharacter,
    OutlineOverview,
    ParsedOutline,
    ParsedStoryboard,
    StoryboardData,
    StoryboardFrame,
    StoryOutline,
    ValidationFailure,
    band_of,
    clamp_ratio,
)
from comicgen.graphs.nodes.json_parser import parse_json_object

logger = logging.getLogger(__name__)


def _field(data: dict, *names: str) -> Any:
    """First present, non-null value among alternative key spellings."""
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


def _present_text(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip() != ""


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ratio(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def repair_dialogue(raw: Any, *, path: str = "dialogue") -> DialogueItem:
    if not isinstance(raw, dict):
        raise StructuralValidationError(f"{path} is not an object", path=path)
    role = raw.get("role")
    text = raw.get("text")
    if not _present_text(role):
        raise StructuralValidationError(f"{path}.role is missing", path=f"{path}.role")
    if not _present_text(text):
        raise StructuralValidationError(f"{path}.text is missing", path=f"{path}.text")

    x = _ratio(_field(raw, "xRatio", "x_ratio"))
    if x is None:
        x = DEFAULT_X_RATIO
        record_dialogue_repair("default_x")
    y = _ratio(_field(raw, "yRatio", "y_ratio"))
    if y is None:
        y = DEFAULT_Y_RATIO
        record_dialogue_repair("default_y")

    clamped_x, clamped_y = clamp_ratio(x), clamp_ratio(y)
    if clamped_x != x or clamped_y != y:
        record_dialogue_repair("clamp")

    anchor = band_of(clamped_x)
    if raw.get("anchor") != anchor:
        record_dialogue_repair("anchor")

    return DialogueItem(
        role=str(role).strip(),
        text=str(text).strip(),
        anchor=anchor,
        x_ratio=clamped_x,
        y_ratio=clamped_y,
    )


def _frame_id(value: Any, path: str) -> int:
    if isinstance(value, bool):
        raise StructuralValidationError(f"{path} is not an integer", path=path)
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError) as exc:
        raise StructuralValidationError(f"{path} is not an integer", path=path) from exc


def _validate_frame(raw: Any, index: int) -> StoryboardFrame:
    path = f"frames[{index}]"
    if not isinstance(raw, dict):
        raise StructuralValidationError(f"{path} is not an object", path=path)

    frame_id = _field(raw, "frameId", "frame_id")
    if frame_id is None:
        raise StructuralValidationError(f"{path}.frameId is missing", path=f"{path}.frameId")
    image_prompt = _field(raw, "imagePrompt", "image_prompt")
    if not _present_text(image_prompt):
        raise StructuralValidationError(f"{path}.imagePrompt is missing", path=f"{path}.imagePrompt")

    raw_dialogues = raw.get("dialogues")
    if raw_dialogues is None:
        raw_dialogues = []
    if not isinstance(raw_dialogues, list):
        raise StructuralValidationError(f"{path}.dialogues is not an array", path=f"{path}.dialogues")

    return StoryboardFrame(
        frame_id=_frame_id(frame_id, f"{path}.frameId"),
        image_prompt=str(image_prompt).strip(),
        dialogues=[
            repair_dialogue(item, path=f"{path}.dialogues[{i}]") for i, item in enumerate(raw_dialogues)
        ],
        narration=_optional_text(raw.get("narration")),
    )


def validate_storyboard(raw: Any) -> StoryboardData:
    if not isinstance(raw, dict):
        raise StructuralValidationError("storyboard is not an object", path="$")
    frames_raw = raw.get("frames")
    if not isinstance(frames_raw, list):
        raise StructuralValidationError("storyboard.frames is missing", path="frames")
    if not frames_raw:
        raise StructuralValidationError("storyboard.frames is empty", path="frames")

    frames = [_validate_frame(item, i) for i, item in enumerate(frames_raw)]

    expected = list(range(1, len(frames) + 1))
    if [f.frame_id for f in frames] != expected:
        logger.warning(
            "storyboard.frames_renumbered original=%s",
            [f.frame_id for f in frames],
        )
        frames = [f.model_copy(update={"frame_id": i}) for i, f in zip(expected, frames)]

    return StoryboardData(frames=frames)


def _require_list(container: dict, key: str, path: str) -> list:
    value = container.get(key)
    if not isinstance(value, list) or not value:
        raise StructuralValidationError(f"outline.{path} is missing or empty", path=path)
    return value


def validate_outline(raw: Any) -> StoryOutline:
    if not isinstance(raw, dict):
        raise StructuralValidationError("outline is not an object", path="$")
    overview_raw = raw.get("overview")
    if not isinstance(overview_raw, dict):
        raise StructuralValidationError("outline.overview is missing", path="overview")
    for key in ("title", "logline"):
        if not _present_text(overview_raw.get(key)):
            raise StructuralValidationError(f"outline.overview.{key} is missing", path=f"overview.{key}")

    chapters_raw = _require_list(raw, "chapters", "chapters")
    characters_raw = _require_list(raw, "characters", "characters")

    page_count = _field(overview_raw, "pageCountSuggestion", "page_count_suggestion")
    page_count_value = _ratio(page_count)
    overview = OutlineOverview(
        title=str(overview_raw["title"]).strip(),
        logline=str(overview_raw["logline"]).strip(),
        theme=_optional_text(overview_raw.get("theme")),
        tone=_optional_text(overview_raw.get("tone")),
        audience=_optional_text(overview_raw.get("audience")),
        page_count_suggestion=int(page_count_value) if page_count_value is not None else None,
    )

    chapters: list[OutlineChapter] = []
    for index, item in enumerate(chapters_raw):
        if not isinstance(item, dict):
            raise StructuralValidationError(f"chapters[{index}] is not an object", path=f"chapters[{index}]")
        chapter_id = _ratio(_field(item, "chapterId", "chapter_id"))
        key_scenes = _field(item, "keyScenes", "key_scenes")
        chapters.append(
            OutlineChapter(
                chapter_id=int(chapter_id) if chapter_id is not None else index + 1,
                title=str(item.get("title") or f"Chapter {index + 1}").strip(),
                summary=str(item.get("summary") or "").strip(),
                key_scenes=[str(s) for s in key_scenes] if isinstance(key_scenes, list) else None,
            )
        )

    characters: list[OutlineCharacter] = []
    for index, item in enumerate(characters_raw):
        if not isinstance(item, dict) or not _present_text(item.get("name")):
            raise StructuralValidationError(f"characters[{index}].name is missing", path=f"characters[{index}].name")
        characters.append(
            OutlineCharacter(
                name=str(item["name"]).strip(),
                role=str(item.get("role") or "").strip(),
                description=str(item.get("description") or "").strip(),
                visual=_optional_text(item.get("visual")),
            )
        )

    return StoryOutline(overview=overview, chapters=chapters, characters=characters)


def parse_outline(text: str) -> ParsedOutline | ValidationFailure:
    try:
        raw = parse_json_object(text)
    except JsonExtractionError as exc:
        return ValidationFailure(reason="json", message=str(exc))
    try:
        return ParsedOutline(outline=validate_outline(raw))
    except StructuralValidationError as exc:
        return ValidationFailure(reason="structure", message=str(exc), path=exc.path)


def parse_storyboard(text: str) -> ParsedStoryboard | ValidationFailure:
    try:
        raw = parse_json_object(text)
    except JsonExtractionError as exc:
        return ValidationFailure(reason="json", message=str(exc))
    try:
        return ParsedStoryboard(storyboard=validate_storyboard(raw))
    except StructuralValidationError as exc:
        return ValidationFailure(reason="structure", message=str(exc), path=exc.path)
