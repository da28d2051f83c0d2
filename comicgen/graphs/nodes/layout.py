from __future__ import annotations

from comicgen.graphs.contracts import StoryboardFrame

MAX_HINT_ROLES = 4
LOWER_THIRD = 1 / 3
UPPER_THIRD = 2 / 3

CONSTRAINT_POSITIONS = (
    "Preserve every character's side of the frame exactly as described; "
    "do not mirror, flip or swap character positions."
)
CONSTRAINT_NO_TEXT = (
    "Do not draw any text, letters, speech bubbles, captions or panel borders in the image; "
    "dialogue is composited afterwards."
)


def horizontal_cell(x: float) -> str:
    if x < LOWER_THIRD:
        return "left"
    if x > UPPER_THIRD:
        return "right"
    return "center"


def vertical_cell(y: float) -> str:
    if y < LOWER_THIRD:
        return "top"
    if y > UPPER_THIRD:
        return "bottom"
    return "middle"


def role_positions(frame: StoryboardFrame) -> list[tuple[str, float, float]]:
    """Average (x, y) per role, in order of first appearance."""
    sums: dict[str, list[float]] = {}
    for item in frame.dialogues:
        acc = sums.setdefault(item.role, [0.0, 0.0, 0.0])
        acc[0] += item.x_ratio
        acc[1] += item.y_ratio
        acc[2] += 1
    return [(role, acc[0] / acc[2], acc[1] / acc[2]) for role, acc in sums.items()]


def build_layout_hint(frame: StoryboardFrame) -> str:
    sentences = []
    for role, x, y in role_positions(frame)[:MAX_HINT_ROLES]:
        sentences.append(
            f"{role} is placed at the {vertical_cell(y)}-{horizontal_cell(x)} of the frame "
            f"(x={x:.2f}, y={y:.2f})."
        )
    sentences.append(CONSTRAINT_POSITIONS)
    sentences.append(CONSTRAINT_NO_TEXT)
    return "Composition: " + " ".join(sentences)


def compose_image_prompt(frame: StoryboardFrame) -> str:
    return f"{frame.image_prompt.strip()}\n\n{build_layout_hint(frame)}"
