"""Library configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas.synthesis import CacheFormat, OutputFormat

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    elevenlabs_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ELEVENLABS_API_KEY",
            "ELEVEN_API_KEY",
            "elevenlabs_api_key",
        ),
    )
    elevenlabs_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.elevenlabs.io/v1"),
        validation_alias=AliasChoices("ELEVENLABS_BASE_URL", "base_url"),
    )
    request_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices("ELEVENLABS_TIMEOUT", "timeout"),
        ge=1,
    )
    connect_timeout: float = Field(
        default=10.0,
        validation_alias=AliasChoices(
            "ELEVENLABS_CONNECT_TIMEOUT", "connect_timeout"
        ),
        gt=0,
    )
    cache_dir: Path = Field(
        default_factory=lambda: Path(".cache/voicestream"),
        validation_alias=AliasChoices("VOICESTREAM_CACHE_DIR", "cache_dir"),
    )
    default_model_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ELEVENLABS_MODEL_ID",
            "default_model_id",
        ),
    )
    default_output_format: OutputFormat = Field(
        default=OutputFormat.PCM_24000,
        validation_alias=AliasChoices(
            "VOICESTREAM_OUTPUT_FORMAT", "default_output_format"
        ),
    )
    default_cache_format: CacheFormat = Field(
        default=CacheFormat.NONE,
        validation_alias=AliasChoices(
            "VOICESTREAM_CACHE_FORMAT", "default_cache_format"
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
