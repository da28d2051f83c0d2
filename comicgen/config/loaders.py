from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

ModelCategory = Literal["text", "image"]
ModelProvider = Literal["dashscope", "volcanoark", "qiniu", "gemini"]


class ModelSpec(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: ModelCategory
    provider: ModelProvider
    supports_reference: bool = False
    multi_reference: bool = False
    max_reference_images: int = Field(default=0, ge=0)
    is_legacy: bool = False
    default_size: str | None = None


class ModelRegistryV1(BaseModel):
    version: str
    models: list[ModelSpec]


_CONFIG_DIR = Path(__file__).parent


@lru_cache(maxsize=1)
def load_model_registry_v1() -> ModelRegistryV1:
    """Load the model registry shipped with the package."""
    path = _CONFIG_DIR / "models_v1.json"
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return ModelRegistryV1.model_validate(data)


def clear_config_cache() -> None:
    """Clear cached config data. Call this to force config reload."""
    load_model_registry_v1.cache_clear()


def get_model(model_id: str) -> ModelSpec:
    for spec in load_model_registry_v1().models:
        if spec.id == model_id:
            return spec
    raise KeyError(f"Unknown model_id: {model_id}")


def list_active_models(category: ModelCategory) -> list[ModelSpec]:
    return [m for m in load_model_registry_v1().models if m.category == category and not m.is_legacy]


def supports_reference(model_id: str) -> bool:
    try:
        return get_model(model_id).supports_reference
    except KeyError:
        return False


def is_multi_reference(model_id: str) -> bool:
    try:
        spec = get_model(model_id)
    except KeyError:
        return False
    return spec.supports_reference and spec.multi_reference
