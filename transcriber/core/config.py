from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from transcriber.domain.models import GenerationConfig

DEFAULT_PROMPT = (
    "Transcribe all of the text in this image exactly as it appears. "
    "Output only the transcribed text, without any preamble, explanation, "
    "description, summary or closing remarks."
)


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    GEMINI_API_KEY: str = ""
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com"
    GEMINI_MODEL: str = "gemini-2.0-flash-exp"
    GEMINI_STREAM_TIMEOUT: float = 300.0
    GEMINI_CONNECT_TIMEOUT: float = 10.0

    TRANSCRIPTION_PROMPT: str = DEFAULT_PROMPT
    GENERATION: GenerationConfig = Field(default_factory=GenerationConfig)

    # Window size K: at most this many streams are open at once
    MAX_CONCURRENCY: int = Field(5, gt=0)
    CONCURRENCY_MODE: Literal["window", "sliding"] = "window"

    MAX_IMAGE_BYTES: int = 20 * 1024 * 1024
    SUPPORTED_MEDIA_TYPES: List[str] = [
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/gif",
        "image/heic",
        "image/heif",
    ]

    FETCH_TIMEOUT: float = 30.0
    DROP_URL_PATTERN: str = r"\.(jpg|jpeg|png|gif|webp)$"

    BREAKER_FAIL_MAX: int = 5
    BREAKER_RESET_TIMEOUT: int = 60

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True


settings = AppConfig()
config = settings  # alias used by the API layer
