from __future__ import annotations

from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry(auto_describe=True)

STAGE_DURATION = Histogram(
    "comicgen_stage_duration_seconds",
    "Duration (seconds) of each story pipeline stage.",
    ["stage"],
    registry=registry,
)

MODEL_CALL_DURATION = Histogram(
    "comicgen_model_call_duration_seconds",
    "Latency of single chat-model calls.",
    ["model"],
    registry=registry,
)

MODEL_CALLS_TOTAL = Counter(
    "comicgen_model_calls_total",
    "Chat-model calls partitioned by model and status.",
    ["model", "status"],
    registry=registry,
)

FALLBACK_EXHAUSTED = Counter(
    "comicgen_fallback_exhausted_total",
    "Stages where every model candidate failed.",
    ["stage"],
    registry=registry,
)

JSON_PARSE_FAILURES = Counter(
    "comicgen_json_parse_failures_total",
    "Number of times parsing JSON from model output failed, labeled by the extraction tier.",
    ["tier"],
    registry=registry,
)

DIALOGUE_REPAIRS = Counter(
    "comicgen_dialogue_repairs_total",
    "Dialogue items repaired by the storyboard validator.",
    ["kind"],
    registry=registry,
)

CONSISTENCY_CORRECTIONS = Counter(
    "comicgen_consistency_corrections_total",
    "Cross-frame position corrections applied by the normalizer.",
    ["kind"],
    registry=registry,
)

IMAGE_GENERATIONS_TOTAL = Counter(
    "comicgen_image_generations_total",
    "Image generation attempts by provider and outcome.",
    ["provider", "status"],
    registry=registry,
)

IMAGE_POLL_ATTEMPTS = Counter(
    "comicgen_image_poll_attempts_total",
    "Task status polls issued against async image providers.",
    ["provider"],
    registry=registry,
)


@contextmanager
def track_stage(stage: str):
    with STAGE_DURATION.labels(stage=stage).time():
        yield


@contextmanager
def track_model_call(model: str):
    timer = MODEL_CALL_DURATION.labels(model=model).time()
    timer.__enter__()
    try:
        yield
        MODEL_CALLS_TOTAL.labels(model=model, status="success").inc()
    except Exception:
        MODEL_CALLS_TOTAL.labels(model=model, status="error").inc()
        raise
    finally:
        timer.__exit__(None, None, None)


def increment_json_parse_failure(tier: str) -> None:
    JSON_PARSE_FAILURES.labels(tier=tier).inc()


def record_fallback_exhausted(stage: str) -> None:
    FALLBACK_EXHAUSTED.labels(stage=stage).inc()


def record_dialogue_repair(kind: str) -> None:
    DIALOGUE_REPAIRS.labels(kind=kind).inc()


def record_consistency_corrections(swaps: int, outliers: int) -> None:
    if swaps:
        CONSISTENCY_CORRECTIONS.labels(kind="swap").inc(swaps)
    if outliers:
        CONSISTENCY_CORRECTIONS.labels(kind="outlier").inc(outliers)


def record_image_generation(provider: str, status: str) -> None:
    IMAGE_GENERATIONS_TOTAL.labels(provider=provider, status=status).inc()


def record_poll_attempt(provider: str) -> None:
    IMAGE_POLL_ATTEMPTS.labels(provider=provider).inc()


def get_metrics_payload() -> bytes:
    return generate_latest(registry)
