from __future__ import annotations

import math
import re
from dataclasses import dataclass

from comicgen.core.exceptions import StructuralValidationError
from comicgen.graphs.contracts import StoryboardData, StoryboardFrame
from comicgen.graphs.nodes.validation import parse_storyboard, validate_storyboard

PAGES_PER_SEGMENT = 10
CHARS_PER_PAGE = 250
PARAGRAPHS_PER_PAGE = 2

_PAGE_MARKER = re.compile(
    r"^[ \t]*(?:(?:page|frame)[ \t]*\d+|第[ \t]*\d+[ \t]*[页帧])[ \t]*[:：]",
    re.IGNORECASE | re.MULTILINE,
)
_SCENE = re.compile(r"\[\s*(?:scene|场景)\s*[:：]\s*(?P<text>[^\]]*)\]", re.IGNORECASE)
_NARRATION = re.compile(r"^[ \t(（]*(?:narration|旁白)\s*[:：]\s*(?P<text>.+?)[)）]?\s*$", re.IGNORECASE | re.MULTILINE)
_DIALOGUE = re.compile(r"^[ \t]*(?P<role>[^\s:：\[(（\"“”][^:：\n\"“”]{0,40}?)\s*[:：]\s*(?P<text>.+?)\s*$", re.MULTILINE)
_QUOTES = "\"'“”「」"
_NON_SPEAKERS = {"scene", "narration", "旁白", "场景"}


@dataclass(frozen=True)
class ScriptSegment:
    segment_id: int
    frames: list[StoryboardFrame]
    page_count: int
    text: str


def _frame_text(frame: StoryboardFrame) -> str:
    lines = [f"Frame {frame.frame_id}:", f"[Scene: {frame.image_prompt}]"]
    lines.extend(f"{item.role}: {item.text}" for item in frame.dialogues)
    if frame.narration:
        lines.append(f"(Narration: {frame.narration})")
    return "\n".join(lines)


def split_storyboard(storyboard: StoryboardData, pages_per_segment: int = PAGES_PER_SEGMENT) -> list[ScriptSegment]:
    """Chunk frames into render batches of at most ``pages_per_segment``."""
    if pages_per_segment < 1:
        raise ValueError("pages_per_segment must be at least 1")
    segments = []
    frames = storyboard.frames
    for segment_id, offset in enumerate(range(0, len(frames), pages_per_segment), start=1):
        chunk = frames[offset : offset + pages_per_segment]
        segments.append(
            ScriptSegment(
                segment_id=segment_id,
                frames=chunk,
                page_count=len(chunk),
                text="\n\n".join(_frame_text(f) for f in chunk),
            )
        )
    return segments


def estimate_page_count(script_text: str) -> int:
    """Frames of an embedded storyboard, else page markers, else length."""
    if "{" in script_text:
        parsed = parse_storyboard(script_text)
        if parsed.kind == "storyboard":
            return len(parsed.storyboard.frames)
    markers = _PAGE_MARKER.findall(script_text)
    if markers:
        return len(markers)
    return max(1, math.ceil(len(script_text) / CHARS_PER_PAGE))


def split_script_pages(script_text: str) -> list[str]:
    """Split free-form script text into per-page chunks.

    Page/frame markers win; without them every two paragraphs make a page.
    """
    text = script_text.strip()
    if not text:
        return []
    starts = [m.start() for m in _PAGE_MARKER.finditer(text)]
    if starts:
        bounds = starts + [len(text)]
        return [chunk for chunk in (text[a:b].strip() for a, b in zip(bounds, bounds[1:])) if chunk]
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    return [
        "\n\n".join(paragraphs[i : i + PARAGRAPHS_PER_PAGE]) for i in range(0, len(paragraphs), PARAGRAPHS_PER_PAGE)
    ]


def _page_frame(page_text: str, frame_id: int) -> dict:
    body = _PAGE_MARKER.sub("", page_text, count=1).strip()
    scenes = [m.group("text").strip() for m in _SCENE.finditer(body) if m.group("text").strip()]
    narration = [m.group("text").strip() for m in _NARRATION.finditer(body)]

    dialogues = []
    for match in _DIALOGUE.finditer(_SCENE.sub("", body)):
        role = match.group("role").strip()
        if role.lower() in _NON_SPEAKERS:
            continue
        line = match.group("text").strip().strip(_QUOTES).strip()
        if line:
            dialogues.append({"role": role, "text": line})

    return {
        "frameId": frame_id,
        "imagePrompt": ", ".join(scenes) or body or page_text,
        "dialogues": dialogues,
        "narration": " ".join(narration) or None,
    }


def script_to_storyboard(script_text: str) -> StoryboardData:
    """Build a storyboard from a plain-text script segment, one frame per page."""
    pages = split_script_pages(script_text)
    if not pages:
        raise StructuralValidationError("script segment is empty", path="scriptSegment")
    return validate_storyboard({"frames": [_page_frame(page, i) for i, page in enumerate(pages, start=1)]})
