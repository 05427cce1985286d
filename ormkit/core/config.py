from functools import lru_cache

from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly typed configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(default="ormkit")
    environment: Literal["dev", "test", "staging", "prod"] = Field(default="dev")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    database_url: str = Field(default="sqlite+pysqlite:///./ormkit.db")
    db_echo: bool = Field(default=False)

    # Database connection pooling settings
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Number of connections to keep in the pool")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Max connections to create beyond pool_size")
    db_pool_timeout: int = Field(default=30, ge=1, le=300, description="Seconds to wait for connection from pool")
    db_pool_recycle: int = Field(default=3600, ge=300, description="Seconds before recycling a connection")
    db_pool_pre_ping: bool = Field(default=True, description="Enable connection health checks before use")

    run_startup_ddl: bool = Field(default=False)
    run_startup_seed: bool = Field(default=False)

    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=1000, ge=1)

    instrumentation_enabled: bool = Field(default=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        if value in (None, "", b""):
            return "INFO"
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if isinstance(value, str):
            level = value.strip().upper()
            if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
                raise ValueError(f"LOG_LEVEL must be a logging level name, got {value!r}")
            return level
        raise TypeError("LOG_LEVEL must be a string")

    @computed_field(return_type=bool)
    def is_production(self) -> bool:
        return self.environment == "prod"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
