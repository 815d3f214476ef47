from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DIRSYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "DirSync"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    history_default_limit: PositiveInt = 10
    history_max_limit: PositiveInt = 200

    run_stale_after_seconds: PositiveInt | None = None
    store_retry_attempts: PositiveInt = 3
    store_retry_backoff_seconds: PositiveFloat = 1.0

    reconciler: str | None = None

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("reconciler")
    @classmethod
    def _validate_reconciler_path(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        module_name, sep, attribute = value.strip().partition(":")
        if not sep or not module_name or not attribute:
            raise ValueError("reconciler must use the 'module:attribute' form")
        return f"{module_name}:{attribute}"

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        if self.history_max_limit < self.history_default_limit:
            raise ValueError("history_max_limit must be greater than or equal to history_default_limit")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "dirsync.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
