from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = Field(default="sqlite+pysqlite:///./taletree.db", validation_alias="DATABASE_URL")
    db_auto_create: bool = Field(default=True, validation_alias="DB_AUTO_CREATE")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")

    google_cloud_project: str | None = Field(default=None, validation_alias="GOOGLE_CLOUD_PROJECT")
    google_cloud_location: str = Field(default="us-central1", validation_alias="GOOGLE_CLOUD_LOCATION")

    gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
    gemini_text_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_TEXT_MODEL")
    gemini_moderation_model: str = Field(
        default="gemini-2.5-flash-lite",
        validation_alias="GEMINI_MODERATION_MODEL",
    )
    gemini_image_model: str = Field(default="gemini-2.5-flash-image", validation_alias="GEMINI_IMAGE_MODEL")
    gemini_tts_model: str = Field(default="gemini-2.5-flash-preview-tts", validation_alias="GEMINI_TTS_MODEL")
    gemini_video_model: str = Field(default="veo-3.0-fast-generate-001", validation_alias="GEMINI_VIDEO_MODEL")
    gemini_fallback_text_model: str | None = Field(default=None, validation_alias="GEMINI_FALLBACK_TEXT_MODEL")
    gemini_fallback_image_model: str | None = Field(default=None, validation_alias="GEMINI_FALLBACK_IMAGE_MODEL")
    gemini_max_retries: int = Field(default=3, validation_alias="GEMINI_MAX_RETRIES")
    gemini_initial_backoff_seconds: float = Field(
        default=0.8,
        validation_alias="GEMINI_INITIAL_BACKOFF_SECONDS",
    )
    gemini_timeout_seconds: float = Field(default=60.0, validation_alias="GEMINI_TIMEOUT_SECONDS")
    gemini_circuit_breaker_threshold: int = Field(
        default=5,
        validation_alias="GEMINI_CIRCUIT_BREAKER_THRESHOLD",
    )
    gemini_circuit_breaker_timeout: int = Field(
        default=60,
        validation_alias="GEMINI_CIRCUIT_BREAKER_TIMEOUT",
    )

    media_root: str = Field(default="./storage/media", validation_alias="MEDIA_ROOT")
    media_url_prefix: str = Field(default="/media", validation_alias="MEDIA_URL_PREFIX")

    expansion_max_depth: int = Field(default=3, ge=1, validation_alias="EXPANSION_MAX_DEPTH")
    expansion_branching_factor: int = Field(default=3, ge=2, le=3, validation_alias="EXPANSION_BRANCHING_FACTOR")
    chapter_max_attempts: int = Field(default=2, ge=1, validation_alias="CHAPTER_MAX_ATTEMPTS")
    moderation_max_retries: int = Field(default=2, ge=0, validation_alias="MODERATION_MAX_RETRIES")
    external_call_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        validation_alias="EXTERNAL_CALL_TIMEOUT_SECONDS",
    )

    video_enabled: bool = Field(default=False, validation_alias="VIDEO_ENABLED")
    video_poll_interval_seconds: float = Field(default=5.0, validation_alias="VIDEO_POLL_INTERVAL_SECONDS")
    video_max_polls: int = Field(default=60, validation_alias="VIDEO_MAX_POLLS")

    worker_concurrency: int = Field(default=2, ge=1, validation_alias="WORKER_CONCURRENCY")
    worker_queue_maxsize: int = Field(default=100, ge=1, validation_alias="WORKER_QUEUE_MAXSIZE")
    shutdown_grace_seconds: float = Field(default=30.0, ge=0, validation_alias="SHUTDOWN_GRACE_SECONDS")


settings = Settings()
