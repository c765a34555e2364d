"""Runtime configuration for the music generation service."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("core.settings")

# Provider endpoints; an empty value after stripping refuses to start.
_ENDPOINT_FIELDS = (
    "SUNO_API_BASE",
    "SUNO_GEN_PATH",
    "SUNO_TASK_STATUS_PATH",
    "SUNO_CREDIT_PATH",
    "SUNO_WAV_PATH",
    "SUNO_WAV_INFO_PATH",
    "SUNO_VOCAL_PATH",
    "SUNO_VOCAL_INFO_PATH",
    "SUNO_LYRICS_GEN_PATH",
    "SUNO_LYRICS_INFO_PATH",
    "SUNO_TIMESTAMPED_LYRICS_PATH",
    "SUNO_COVER_PATH",
    "SUNO_COVER_INFO_PATH",
    "SUNO_EXTEND_PATH",
    "SUNO_VIDEO_PATH",
    "SUNO_VIDEO_INFO_PATH",
    "SUNO_STYLE_BOOST_PATH",
    "MUREKA_API_BASE",
)

_SECRET_FIELDS = ("DATABASE_URL", "REDIS_URL", "SUNO_API_TOKEN", "SUNO_CALLBACK_SECRET", "MUREKA_API_KEY")

_MUREKA_MODELS = {"auto", "mureka-6", "mureka-7", "mureka-o1"}


def token_tail(token: Optional[str], size: int = 4) -> str:
    """Last ``size`` characters of a credential, or all of it when shorter."""

    text = (token or "").strip()
    return text[-size:] if len(text) > size else text


def _mask(value: Optional[str]) -> str:
    text = (value or "").strip()
    if len(text) <= 4:
        return text
    return f"***{token_tail(text)}"


def parse_rate_limit(raw: str) -> tuple[int, float]:
    """Parse ``"count/seconds"`` into a tuple."""

    count_text, _, window_text = str(raw or "").strip().partition("/")
    try:
        count, window = int(count_text), float(window_text)
    except ValueError as exc:
        raise ValueError(f"rate limit must look like 'count/seconds', got {raw!r}") from exc
    if count <= 0 or window <= 0:
        raise ValueError(f"rate limit values must be positive, got {raw!r}")
    return count, window


class Settings(BaseSettings):
    """Environment-driven settings. Read through :func:`get_settings`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = Field(default="prod")
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)

    DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None
    REDIS_PREFIX: str = Field(default="music:prod")
    DOWNLOAD_DIR: str = Field(default="downloads")
    STUCK_GENERATION_MINUTES: int = Field(default=30, ge=1)

    # shared HTTP client tuning
    HTTP_TIMEOUT_CONNECT: float = Field(default=10.0, ge=0.1, le=300.0)
    HTTP_TIMEOUT_READ: float = Field(default=60.0, ge=1.0, le=600.0)
    HTTP_TIMEOUT_TOTAL: float = Field(default=75.0, ge=1.0, le=900.0)
    HTTP_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    HTTP_POOL_CONNECTIONS: int = Field(default=50, ge=1, le=200)
    HTTP_POOL_PER_HOST: int = Field(default=10, ge=1, le=100)

    SUNO_ENABLED: bool = True
    SUNO_API_BASE: str = "https://api.sunoapi.org"
    SUNO_API_TOKEN: Optional[str] = None
    SUNO_CALLBACK_URL: Optional[str] = None
    SUNO_CALLBACK_SECRET: Optional[str] = None
    SUNO_MODEL: str = "V3_5"
    SUNO_TIMEOUT_SEC: Optional[float] = Field(default=None, ge=1.0, le=600.0)
    SUNO_MAX_RETRIES: Optional[int] = Field(default=None, ge=1, le=10)
    SUNO_LOW_CREDITS_THRESHOLD: int = Field(default=5, ge=0)
    SUNO_GEN_PATH: str = "/api/v1/generate"
    SUNO_TASK_STATUS_PATH: str = "/api/v1/generate/record-info"
    SUNO_CREDIT_PATH: str = "/api/v1/generate/credit"
    SUNO_WAV_PATH: str = "/api/v1/wav/generate"
    SUNO_WAV_INFO_PATH: str = "/api/v1/wav/record-info"
    SUNO_VOCAL_PATH: str = "/api/v1/vocal-removal/generate"
    SUNO_VOCAL_INFO_PATH: str = "/api/v1/vocal-removal/record-info"
    SUNO_LYRICS_GEN_PATH: str = "/api/v1/lyrics/generate"
    SUNO_LYRICS_INFO_PATH: str = "/api/v1/lyrics/record-info"
    SUNO_TIMESTAMPED_LYRICS_PATH: str = "/api/v1/generate/get-timestamped-lyrics"
    SUNO_COVER_PATH: str = "/api/v1/suno/cover/generate"
    SUNO_COVER_INFO_PATH: str = "/api/v1/suno/cover/record-info"
    SUNO_EXTEND_PATH: str = "/api/v1/generate/extend"
    SUNO_VIDEO_PATH: str = "/api/v1/mp4/generate"
    SUNO_VIDEO_INFO_PATH: str = "/api/v1/mp4/record-info"
    SUNO_STYLE_BOOST_PATH: str = "/api/v1/generate/prompt"

    MUREKA_ENABLED: bool = True
    MUREKA_API_BASE: str = "https://api.mureka.ai"
    MUREKA_API_KEY: Optional[str] = None
    MUREKA_MODEL: str = "auto"
    MUREKA_POLL_INTERVAL_SEC: float = Field(default=5.0, gt=0)
    MUREKA_POLL_MAX_ATTEMPTS: int = Field(default=60, ge=1)

    POLL_FIRST_DELAY_SEC: float = Field(default=5.0, ge=0)
    POLL_BACKOFF_SERIES: str = "8,13,21,34"
    POLL_TIMEOUT_SEC: float = Field(default=420.0, gt=0)

    RATE_LIMIT_SUNO: str = "5/600"
    RATE_LIMIT_MUREKA: str = "10/600"

    # derived in _derive(); never read from the environment
    SUNO_READY: bool = Field(default=False, exclude=True)
    MUREKA_READY: bool = Field(default=False, exclude=True)
    HTTP_TIMEOUT_TOTAL_EFFECTIVE: float = Field(default=0.0, exclude=True)
    HTTP_RETRY_ATTEMPTS_EFFECTIVE: int = Field(default=0, exclude=True)

    @field_validator(*_ENDPOINT_FIELDS, "REDIS_PREFIX", mode="before")
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator(*_SECRET_FIELDS, "SUNO_CALLBACK_URL", mode="before")
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        text = str(value).strip() if value is not None else ""
        return text or None

    @field_validator("LOG_LEVEL", mode="before")
    def _level(cls, value: Any) -> str:
        text = str(value or "").strip().upper()
        return text if isinstance(logging.getLevelName(text), int) else "INFO"

    @field_validator("SUNO_MODEL", mode="before")
    def _suno_model(cls, value: Any) -> str:
        return str(value or "").strip() or "V3_5"

    @field_validator("MUREKA_MODEL", mode="before")
    def _mureka_model(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in _MUREKA_MODELS else "auto"

    @field_validator("RATE_LIMIT_SUNO", "RATE_LIMIT_MUREKA", mode="after")
    def _rate_limit(cls, value: str) -> str:
        parse_rate_limit(value)
        return value.strip()

    @model_validator(mode="after")
    def _derive(self) -> "Settings":
        missing = [name for name in _ENDPOINT_FIELDS if not getattr(self, name)]
        if missing:
            msg = f"Critical endpoint '{missing[0]}' is not configured"
            logger.error(msg, extra={"meta": {"missing": missing}})
            raise RuntimeError(msg)

        self.SUNO_API_BASE = self.SUNO_API_BASE.rstrip("/")
        self.MUREKA_API_BASE = self.MUREKA_API_BASE.rstrip("/")
        if self.SUNO_CALLBACK_URL:
            self.SUNO_CALLBACK_URL = self.SUNO_CALLBACK_URL.rstrip("/") or None

        # the total budget can never be shorter than a single connect or read
        floor = max(self.HTTP_TIMEOUT_CONNECT, self.HTTP_TIMEOUT_READ)
        self.HTTP_TIMEOUT_TOTAL_EFFECTIVE = float(max(self.SUNO_TIMEOUT_SEC or self.HTTP_TIMEOUT_TOTAL, floor))
        self.HTTP_RETRY_ATTEMPTS_EFFECTIVE = max(1, int(self.SUNO_MAX_RETRIES or self.HTTP_RETRY_ATTEMPTS))

        self.SUNO_READY = all(
            (self.SUNO_ENABLED, self.SUNO_API_TOKEN, self.SUNO_CALLBACK_URL, self.SUNO_CALLBACK_SECRET)
        )
        self.MUREKA_READY = bool(self.MUREKA_ENABLED and self.MUREKA_API_KEY)
        return self

    def poll_backoff_series(self) -> list[float]:
        """Positive numbers from ``POLL_BACKOFF_SERIES``; junk entries are skipped."""

        series: list[float] = []
        for part in (self.POLL_BACKOFF_SERIES or "").split(","):
            try:
                value = float(part)
            except ValueError:
                continue
            if value > 0:
                series.append(value)
        return series

    def configuration_summary(self) -> Mapping[str, Any]:
        summary: dict[str, Any] = {
            name: getattr(self, name)
            for name in (
                "APP_ENV",
                "REDIS_PREFIX",
                "SUNO_API_BASE",
                "SUNO_READY",
                "MUREKA_API_BASE",
                "MUREKA_READY",
                "RATE_LIMIT_SUNO",
                "RATE_LIMIT_MUREKA",
            )
        }
        summary.update({name: _mask(getattr(self, name)) for name in _SECRET_FIELDS})
        return summary


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        problems = [
            f"{'::'.join(str(part) for part in entry.get('loc', ()))}: {entry.get('msg', 'invalid value')}"
            for entry in exc.errors()
        ]
        message = "Invalid configuration: " + ", ".join(problems)
        logger.error(message)
        raise RuntimeError(message) from exc


settings = _load_settings()


def get_settings() -> Settings:
    """Return the currently loaded settings object."""

    return settings


def reload_settings() -> Settings:
    """Re-read the environment, replacing the module-level settings."""

    global settings
    settings = _load_settings()
    return settings


__all__ = [
    "Settings",
    "get_settings",
    "parse_rate_limit",
    "reload_settings",
    "settings",
    "token_tail",
]
