from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    otel_endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PHOENIX_OTEL_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT"),
    )
    otel_service_name: str = Field(default="comicgen", validation_alias="OTEL_SERVICE_NAME")

    dashscope_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DASHSCOPE_API_KEY", "QWEN_API_KEY"),
    )
    dashscope_text_api_url: str = Field(
        default="https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation",
        validation_alias="DASHSCOPE_TEXT_API_URL",
    )
    dashscope_api_base: str = Field(
        default="https://dashscope.aliyuncs.com/api/v1",
        validation_alias="DASHSCOPE_API_BASE",
    )
    volcano_ark_api_key: str | None = Field(default=None, validation_alias="VOLCANO_ARK_API_KEY")
    volcano_ark_api_base: str = Field(
        default="https://ark.cn-beijing.volces.com/api/v3",
        validation_alias="VOLCANO_ARK_API_BASE",
    )
    qiniu_api_key: str | None = Field(default=None, validation_alias="QINIU_API_KEY")
    qiniu_api_base: str = Field(default="https://api.qnaigc.com/v1", validation_alias="QINIU_API_BASE")
    gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")

    # Candidate chains: JSON lists of model names or {"model": ..., "options": {...}} objects.
    outline_models: list[str | dict[str, Any]] = Field(
        default=["qwen-max", "deepseek-v3"],
        validation_alias="OUTLINE_MODELS",
    )
    script_models: list[str | dict[str, Any]] = Field(
        default=["qwen-max", "deepseek-v3"],
        validation_alias="SCRIPT_MODELS",
    )
    storyboard_models: list[str | dict[str, Any]] = Field(
        default=["qwen-max", "deepseek-v3"],
        validation_alias="STORYBOARD_MODELS",
    )

    outline_timeout_seconds: float = Field(default=45.0, validation_alias="OUTLINE_TIMEOUT_SECONDS")
    script_timeout_seconds: float = Field(default=90.0, validation_alias="SCRIPT_TIMEOUT_SECONDS")
    storyboard_timeout_seconds: float = Field(default=120.0, validation_alias="STORYBOARD_TIMEOUT_SECONDS")

    fallback_as_error: bool = Field(default=False, validation_alias="FALLBACK_AS_ERROR")
    json_repair_attempts: int = Field(default=1, validation_alias="JSON_REPAIR_ATTEMPTS")

    consistency_swap_margin: float = Field(default=0.08, validation_alias="CONSISTENCY_SWAP_MARGIN")
    consistency_outlier_threshold: float = Field(default=0.35, validation_alias="CONSISTENCY_OUTLIER_THRESHOLD")

    default_image_model: str = Field(default="wan2.6-image", validation_alias="DEFAULT_IMAGE_MODEL")
    image_size: str | None = Field(default=None, validation_alias="IMAGE_SIZE")
    image_negative_prompt: str = Field(
        default="horror, violence, adult content, low quality, blurry, deformed",
        validation_alias="IMAGE_NEGATIVE_PROMPT",
    )
    image_style_prompt: str | None = Field(default=None, validation_alias="IMAGE_STYLE_PROMPT")
    image_retry_backoff_seconds: list[float] = Field(
        default=[2.0, 4.0],
        validation_alias="IMAGE_RETRY_BACKOFF_SECONDS",
    )
    first_frame_delay_seconds: float = Field(default=1.0, validation_alias="FIRST_FRAME_DELAY_SECONDS")
    inter_frame_delay_seconds: float = Field(default=1.5, validation_alias="INTER_FRAME_DELAY_SECONDS")
    max_reference_images: int = Field(default=5, validation_alias="MAX_REFERENCE_IMAGES")
    image_request_timeout_seconds: float = Field(default=120.0, validation_alias="IMAGE_REQUEST_TIMEOUT_SECONDS")

    dashscope_poll_interval_seconds: float = Field(default=3.0, validation_alias="DASHSCOPE_POLL_INTERVAL_SECONDS")
    dashscope_poll_max_attempts: int = Field(default=40, validation_alias="DASHSCOPE_POLL_MAX_ATTEMPTS")
    qiniu_poll_interval_seconds: float = Field(default=1.5, validation_alias="QINIU_POLL_INTERVAL_SECONDS")
    qiniu_poll_max_attempts: int = Field(default=30, validation_alias="QINIU_POLL_MAX_ATTEMPTS")

    rate_limit_window_seconds: float = Field(default=60.0, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=60, validation_alias="RATE_LIMIT_MAX_REQUESTS")

    storage_backend: str = Field(default="local", validation_alias="STORAGE_BACKEND")
    media_root: str = Field(default="./storage/comic-images", validation_alias="MEDIA_ROOT")
    media_url_prefix: str = Field(default="/media", validation_alias="MEDIA_URL_PREFIX")
    artifact_ttl_days: int = Field(default=7, validation_alias="ARTIFACT_TTL_DAYS")


settings = Settings()
