"""
Versioned prompt loader.

Prompts live in YAML files grouped by domain:

    v1/
    ├── shared/    # System instructions shared by every stage
    ├── story/     # Outline, script, storyboard, conversation revision
    └── utility/   # JSON repair

Usage:
    from comicgen.prompts.loader import get_prompt, render_prompt

    rendered = render_prompt("prompt_outline", story_prompt="...")
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent
_VERSION = "v1"

_DOMAIN_DIRS = [
    "shared",
    "story",
    "utility",
]

_SHARED_KEYS = ("system_prompt_json",)


@lru_cache(maxsize=1)
def _jinja_env() -> Environment:
    """Create Jinja2 environment for prompt rendering."""
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _template_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("template"), str):
        return value["template"]
    return None


@lru_cache(maxsize=1)
def _load_versioned_prompts() -> dict[str, Any]:
    """Load every prompt file of the current version; invalid templates fail fast."""
    prompts: dict[str, Any] = {}
    version_dir = _PROMPTS_DIR / _VERSION

    for domain in _DOMAIN_DIRS:
        domain_dir = version_dir / domain
        if not domain_dir.exists():
            continue

        for yaml_file in sorted(domain_dir.glob("*.yaml")):
            with yaml_file.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                logger.warning("prompt file %s is not a mapping, skipped", yaml_file)
                continue

            for key, value in data.items():
                template = _template_of(value)
                if template is None:
                    continue
                try:
                    _jinja_env().parse(template)
                except TemplateSyntaxError as e:
                    raise ValueError(f"Invalid Jinja2 template in {yaml_file}:{key}: {e}") from e

            prompts.update(data)

    return prompts


def clear_cache() -> None:
    _load_versioned_prompts.cache_clear()


def get_prompt(name: str) -> str:
    """
    Get a prompt template by name.

    A prompt is either a plain string or a mapping with ``template`` and
    optional ``required_variables``.

    Raises:
        KeyError: If prompt not found or not a template
    """
    template = _template_of(_load_versioned_prompts().get(name))
    if template is None:
        raise KeyError(f"Prompt '{name}' not found or not a string")
    return template


def extract_template_variables(template: str) -> set[str]:
    """Names referenced by ``{{ var }}`` and ``{% if/for var %}`` blocks."""
    variables = set(re.findall(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)", template))
    variables.update(re.findall(r"\{%\s*(?:if|for|elif)\s+([a-zA-Z_][a-zA-Z0-9_]*)", template))
    return variables


def check_required_variables(name: str, context: dict[str, Any]) -> list[str]:
    """Missing variable names for a prompt, using declared ones when present."""
    entry = _load_versioned_prompts().get(name)
    if isinstance(entry, dict) and entry.get("required_variables"):
        required = set(entry["required_variables"])
    else:
        required = extract_template_variables(get_prompt(name)) - set(_SHARED_KEYS)
    return sorted(v for v in required if v not in context)


def render_prompt(name: str, validate: bool = False, **context: Any) -> str:
    """
    Render a prompt template with the given context.

    Shared prompts are added to the context unless explicitly provided.

    Raises:
        ValueError: If validate=True and required variables are missing
    """
    prompts = _load_versioned_prompts()
    for shared_key in _SHARED_KEYS:
        if shared_key not in context and shared_key in prompts:
            context[shared_key] = prompts[shared_key]

    if validate:
        missing = check_required_variables(name, context)
        if missing:
            raise ValueError(f"Missing required variables for '{name}': {missing}")

    return _jinja_env().from_string(get_prompt(name)).render(**context).strip()


def list_prompts(domain: str | None = None) -> list[str]:
    if domain is None:
        return list(_load_versioned_prompts().keys())
    domain_dir = _PROMPTS_DIR / _VERSION / domain
    names: list[str] = []
    for yaml_file in sorted(domain_dir.glob("*.yaml")):
        with yaml_file.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if isinstance(data, dict):
            names.extend(data.keys())
    return names
