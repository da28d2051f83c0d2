import json
import logging
import re

from comicgen.core.exceptions import JsonExtractionError
from comicgen.core.metrics import increment_json_parse_failure
from comicgen.graphs.contracts import ModelCandidate
from comicgen.prompts.loader import render_prompt
from comicgen.services.model_invoker import ChatMessage, ChatOptions

logger = logging.getLogger(__name__)

_FENCE_LINE = re.compile(r"^\s*```[\w+-]*\s*$")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def _strip_markdown_fences(text: str) -> str:
    """Drop a leading and a trailing code-fence line, language tag included."""
    lines = text.split("\n")
    if lines and _FENCE_LINE.match(lines[0]):
        lines = lines[1:]
    if lines and _FENCE_LINE.match(lines[-1]):
        lines = lines[:-1]
    return "\n".join(lines)


def sanitize_model_output(text: str) -> str:
    """Best-effort extraction of the JSON object embedded in raw model text.

    Idempotent: already-clean JSON comes back unchanged.
    """
    cleaned = _strip_markdown_fences((text or "").strip()).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def _clean_json_text(text: str) -> str:
    """Remove trailing commas, the most common model syntax slip."""
    return _TRAILING_COMMA.sub(r"\1", text)


def parse_json_object(text: str) -> dict:
    """Decode the JSON object in model output, or raise JsonExtractionError."""
    candidate = sanitize_model_output(text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        increment_json_parse_failure("sanitized")
        try:
            parsed = json.loads(_clean_json_text(candidate))
        except json.JSONDecodeError as exc:
            increment_json_parse_failure("cleaned")
            raise JsonExtractionError(f"model output is not valid JSON: {exc.msg}") from exc

    if not isinstance(parsed, dict):
        increment_json_parse_failure("not_object")
        raise JsonExtractionError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


async def repair_json_with_model(
    executor,
    stage: str,
    candidates: list[ModelCandidate],
    malformed_text: str,
    expected_schema: str | None = None,
    max_repair_attempts: int = 1,
    timeout_seconds: float | None = None,
) -> dict | None:
    """Ask the stage's candidate chain to re-emit malformed output as valid JSON.

    Returns None when every attempt still fails to decode or the chain fell back.
    """
    schema_hint = f"\n\nExpected schema:\n{expected_schema}" if expected_schema else ""
    for attempt in range(max_repair_attempts):
        prompt = render_prompt(
            "prompt_repair_json",
            schema_hint=schema_hint,
            malformed_text=malformed_text[:4000],
        )
        result = await executor.run(
            f"{stage}_repair",
            candidates,
            [ChatMessage(role="user", content=prompt)],
            ChatOptions(temperature=0.0, timeout_seconds=timeout_seconds),
        )
        if result.is_fallback:
            increment_json_parse_failure("repair_unavailable")
            return None
        try:
            return parse_json_object(result.content)
        except JsonExtractionError:
            increment_json_parse_failure("repair")
            logger.warning(
                "json_repair_failed stage=%s attempt=%s/%s model=%s",
                stage,
                attempt + 1,
                max_repair_attempts,
                result.model,
            )
    return None
