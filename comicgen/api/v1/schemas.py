from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from comicgen.graphs.contracts import ComicPage, StoryOutline


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationMessage(ApiModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ScriptGenerateRequest(ApiModel):
    prompt: str = Field(min_length=1)
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    output_format: Literal["script", "storyboard"] = "script"
    stage: Literal["outline", "script", "storyboard"] | None = None


class ScriptGenerateResponse(ApiModel):
    """Whichever of outline/script/storyboard the request asked for."""

    outline: StoryOutline | None = None
    script: str | None = None
    storyboard: dict[str, Any] | None = None
    provider: str
    providers: dict[str, str] = Field(default_factory=dict)
    is_fallback: bool = False
    message: str | None = None


class ComicGenerateRequest(ApiModel):
    """Either a storyboard or a plain-text script segment; the storyboard wins when both are sent."""

    storyboard: dict[str, Any] | None = None
    script_segment: str | None = None
    start_page_number: int = Field(default=1, ge=1)
    model: str | None = None
    character_references: dict[str, str] = Field(default_factory=dict)
    reference_image: str | None = None
    global_references: list[str] = Field(default_factory=list)
    size: str | None = None
    script_id: str = "unknown"
    segment_id: int | str = 0

    @model_validator(mode="after")
    def _require_source(self):
        if self.storyboard is None and not (self.script_segment or "").strip():
            raise ValueError("storyboard or scriptSegment is required")
        return self


class ComicGenerateResponse(ApiModel):
    pages: list[ComicPage]


class CleanupResponse(ApiModel):
    deleted: int
