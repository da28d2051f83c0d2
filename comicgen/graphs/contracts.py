"""Typed contracts exchanged between pipeline stages.

Attribute names are snake_case; the JSON form (model output and API payloads)
uses the camelCase aliases. Parsing accepts either spelling.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Anchor = Literal["left", "right", "center"]

LEFT_BAND_MAX = 0.45
RIGHT_BAND_MIN = 0.55
DEFAULT_X_RATIO = 0.5
DEFAULT_Y_RATIO = 0.4

CharacterReferences = Mapping[str, str]


def band_of(x_ratio: float) -> Anchor:
    """Anchor implied by a horizontal position."""
    if x_ratio < LEFT_BAND_MAX:
        return "left"
    if x_ratio > RIGHT_BAND_MIN:
        return "right"
    return "center"


def clamp_ratio(value: float) -> float:
    return min(1.0, max(0.0, value))


class ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OutlineOverview(ContractModel):
    title: str
    logline: str
    theme: str | None = None
    tone: str | None = None
    audience: str | None = None
    page_count_suggestion: int | None = None


class OutlineChapter(ContractModel):
    chapter_id: int
    title: str
    summary: str
    key_scenes: list[str] | None = None


class OutlineCharacter(ContractModel):
    name: str
    role: str
    description: str
    visual: str | None = None


class StoryOutline(ContractModel):
    overview: OutlineOverview
    chapters: list[OutlineChapter] = Field(min_length=1)
    characters: list[OutlineCharacter] = Field(min_length=1)


class DialogueItem(ContractModel):
    role: str
    text: str
    anchor: Anchor
    x_ratio: float = Field(ge=0.0, le=1.0)
    y_ratio: float = Field(ge=0.0, le=1.0)


class StoryboardFrame(ContractModel):
    frame_id: int
    image_prompt: str
    dialogues: list[DialogueItem] = Field(default_factory=list)
    narration: str | None = None


class StoryboardData(ContractModel):
    frames: list[StoryboardFrame] = Field(min_length=1)


class ModelCandidate(ContractModel):
    model: str
    options: dict[str, Any] = Field(default_factory=dict)


class ComicPage(ContractModel):
    page_number: int
    image_url: str
    text: str
    dialogue: list[DialogueItem] | None = None
    narration: str | None = None


@dataclass(frozen=True)
class ParsedOutline:
    outline: StoryOutline
    kind: Literal["outline"] = "outline"


@dataclass(frozen=True)
class ParsedStoryboard:
    storyboard: StoryboardData
    kind: Literal["storyboard"] = "storyboard"


@dataclass(frozen=True)
class ValidationFailure:
    reason: Literal["json", "structure"]
    message: str
    path: str | None = None
    kind: Literal["failure"] = "failure"
