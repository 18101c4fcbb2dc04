"""Runtime configuration. Defaults can be overridden through KASPAROV_* environment variables."""

import os
from typing import Mapping, Optional, Self

from pydantic import BaseModel, ValidationError, field_validator

from src.core.exceptions import InvalidRequestError

ENV_PREFIX = "KASPAROV_"
MAX_DIFFICULTY = 4


class Settings(BaseModel):
    database_url: str = "sqlite:///kasparov.db"
    echo_sql: bool = False
    round_duration_seconds: int = 300
    resolution_cron: str = "*/5 * * * *"
    daily_post_cron: str = "0 12 * * *"
    opponent_difficulty: int = 2
    engine_path: Optional[str] = None
    engine_time_limit: float = 0.5
    app_account: str = "kasparov-app"
    top_moves_shown: int = 5
    log_level: str = "INFO"

    @field_validator("round_duration_seconds", "top_moves_shown")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise InvalidRequestError(f"Expected a positive number, got {value}.")
        return value

    @field_validator("opponent_difficulty")
    @classmethod
    def validate_difficulty(cls, value: int) -> int:
        if not 0 <= value <= MAX_DIFFICULTY:
            raise InvalidRequestError(
                f"Difficulty must be between 0 and {MAX_DIFFICULTY}, got {value}."
            )
        return value

    @field_validator("resolution_cron", "daily_post_cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        # minute hour day-of-month month day-of-week
        if len(value.split()) != 5:
            raise InvalidRequestError(
                f"Cron expression must contain 5 fields: {value!r}"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise InvalidRequestError(f"Unknown log level: {value!r}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Self:
        """Collect KASPAROV_<FIELD> variables, e.g. KASPAROV_ROUND_DURATION_SECONDS=60"""
        environ = os.environ if environ is None else environ
        overrides = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        try:
            return cls.model_validate(overrides)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid configuration: {exc}") from exc
