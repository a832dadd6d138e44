"""
Startup configuration, read once from the environment (and .env) by pydantic-settings.

Settings is frozen: pools are built from one snapshot and changing any pool
parameter requires a process restart.
"""

import warnings
from datetime import timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbpools.core.errors import ConfigurationError
from dbpools.core.pool.connect import check_pragma
from dbpools.models import BackendKindEnum, JournalModeEnum


class DatabaseProperties(BaseModel):
    """One SQLite database: file, pragmas, sizing hints and per-connection settings."""

    model_config = ConfigDict(frozen=True)

    file: str = Field(min_length=1)
    pragmas: dict[str, str] = Field(default_factory=dict)
    pool_size: int | None = Field(default=None, ge=1)
    max_pool_size: int = Field(default=1, ge=1)
    journal_mode: JournalModeEnum | None = None
    busy_timeout: timedelta | None = None

    @field_validator("pragmas", mode="before")
    @classmethod
    def _stringify_pragmas(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @field_validator("pragmas")
    @classmethod
    def _check_pragmas(cls, v: dict[str, str]) -> dict[str, str]:
        for key, value in v.items():
            check_pragma(key, value)
        return v

    @field_validator("busy_timeout")
    @classmethod
    def _check_busy_timeout(cls, v: timedelta | None) -> timedelta | None:
        if v is not None and v < timedelta(0):
            raise ValueError("busy_timeout must not be negative")
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    # Opt-in: allows the local development URI/credentials for the networked backend
    DEV_MODE: bool = False

    DATABASE_BACKEND: BackendKindEnum | None = None
    DATABASE: DatabaseProperties = DatabaseProperties(file="./database.sqlite")
    TASKS_DB: DatabaseProperties = DatabaseProperties(file="./tasks.sqlite")

    DATASOURCE_URL: str | None = None
    DATASOURCE_USERNAME: str | None = None
    DATASOURCE_PASSWORD: str | None = None
    DATASOURCE_MAXIMUM_POOL_SIZE: int | None = Field(default=None, ge=1)
    DATASOURCE_MINIMUM_IDLE: int | None = Field(default=None, ge=0)
    DATASOURCE_CONNECTION_TIMEOUT_MS: int | None = Field(default=None, ge=0)
    DATASOURCE_IDLE_TIMEOUT_MS: int | None = Field(default=None, ge=0)
    DATASOURCE_MAX_LIFETIME_MS: int | None = Field(default=None, ge=0)
    DATASOURCE_LEAK_DETECTION_THRESHOLD_MS: int | None = Field(default=None, ge=0)

    # How often each pool reaps idle/expired connections; 0 disables the thread
    POOL_HOUSEKEEPING_PERIOD_SEC: float = Field(default=30.0, ge=0)

    @field_validator("DATASOURCE_URL")
    @classmethod
    def _strip_url(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def _enforce_dev_mode(self) -> "Settings":
        if not self.DEV_MODE:
            return self
        message = "DEV_MODE enables insecure local datasource defaults."
        if self.ENVIRONMENT == "local":
            warnings.warn(message, stacklevel=1)
        else:
            raise ValueError(f"{message} It must not be set when ENVIRONMENT={self.ENVIRONMENT}.")
        return self


def load_settings(**values: Any) -> Settings:
    """Read Settings from the environment; explicit values win over env vars.

    Validation failures are raised as ConfigurationError so startup aborts
    with a single error type.
    """
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"invalid datasource configuration: {e}") from e


settings = load_settings()  # type: ignore
