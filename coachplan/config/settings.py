import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TIMEZONE = "Europe/Paris"
MIN_PREVIEW_TTL_MINUTES = 15
MAX_PREVIEW_TTL_MINUTES = 30

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_database_url() -> str:
    """DATABASE_URL from the environment, else a SQLite file at the repo root.

    The SQLite path is made absolute so the service and the tests agree on it
    whatever the working directory.
    """
    env_url = os.getenv("DATABASE_URL", "")
    if env_url:
        return env_url

    local_db = (Path(__file__).parent.parent.parent / "coachplan.db").resolve()
    logger.warning("DATABASE_URL not set, using local SQLite schedule store", path=str(local_db))
    return f"sqlite:///{local_db}"


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    default_timezone: str = Field(default=DEFAULT_TIMEZONE, validation_alias="DEFAULT_TIMEZONE")
    preview_ttl_minutes: int = Field(
        default=MIN_PREVIEW_TTL_MINUTES,
        validation_alias="PREVIEW_TTL_MINUTES",
        description="Lifetime of a preview set before commit is refused as expired",
    )
    clarification_ttl_minutes: int = Field(default=30, validation_alias="CLARIFICATION_TTL_MINUTES")
    intervention_ttl_minutes: int = Field(default=30, validation_alias="INTERVENTION_TTL_MINUTES")
    drafter_timeout_seconds: float = Field(
        default=20.0,
        validation_alias="DRAFTER_TIMEOUT_SECONDS",
        description="Upper bound for a single intent drafting call",
    )
    drafter_model: str = Field(default="gpt-4o-mini", validation_alias="DRAFTER_MODEL")
    openai_api_key: str = Field(default="", validation_alias="OPENAI_API_KEY")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Accept any casing of a loguru level name; anything else means INFO."""
        level = value.strip().upper()
        if level in LOG_LEVELS:
            return level
        logger.warning(f"LOG_LEVEL '{value}' is not one of {'/'.join(LOG_LEVELS)}, logging at INFO")
        return "INFO"

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Fall back to the default timezone when the configured IANA name is unknown."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown DEFAULT_TIMEZONE '{value}'. Defaulting to {DEFAULT_TIMEZONE}.")
            return DEFAULT_TIMEZONE
        return value

    @field_validator("preview_ttl_minutes")
    @classmethod
    def validate_preview_ttl(cls, value: int) -> int:
        """Clamp preview TTL into the supported window."""
        clamped = max(MIN_PREVIEW_TTL_MINUTES, min(MAX_PREVIEW_TTL_MINUTES, value))
        if clamped != value:
            logger.warning(
                f"PREVIEW_TTL_MINUTES={value} is outside {MIN_PREVIEW_TTL_MINUTES}-{MAX_PREVIEW_TTL_MINUTES}. Using {clamped}."
            )
        return clamped

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_key(cls, value: str) -> str:
        if not value:
            logger.warning("OPENAI_API_KEY is not set. Intent drafting will fail until it is configured.")
        return value


settings = Settings()
