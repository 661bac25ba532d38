"""
Application settings.

Backed by pydantic-settings: every field can be overridden through a
``VISUALFLOW_``-prefixed environment variable or a ``.env`` file.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the orchestration engine and its API."""

    model_config = SettingsConfigDict(
        env_prefix="VISUALFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # General
    APP_NAME: str = "VisualFlow Pipeline Orchestrator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    API_PREFIX: str = "/api"

    # CORS
    ALLOWED_ORIGINS: list[str] = ["*"]
    ALLOWED_METHODS: list[str] = ["GET", "POST", "PUT", "DELETE"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None
    LOG_DIR: str | None = None

    # Storage (None = in-memory)
    DATABASE_URL: str | None = None
    DATABASE_ECHO: bool = False

    # Stage execution
    STAGE_DEFAULT_TIMEOUT_MS: int | None = Field(default=120_000, ge=0)
    STAGE_CACHE_MAX_ENTRIES: int = Field(default=256, ge=1)
    PIPELINE_CONCURRENT_STAGES: bool = False
    EXECUTION_DEADLINE_S: float | None = None

    # Routing / health
    ROUTER_EXCLUDE_UNHEALTHY: bool = False
    HEALTH_MONITOR_ENABLED: bool = False
    HEALTH_CHECK_INTERVAL_S: float = Field(default=60.0, gt=0)
    HEALTH_DEGRADED_LATENCY_MS: float = Field(default=5000.0, gt=0)

    # Owner recorded on system-created configurations
    SYSTEM_USER_ID: str = "system"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


settings = Settings()
