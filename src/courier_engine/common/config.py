"""Courier-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
}


class CourierSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COURIER_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/courier.db"
    sqlite_busy_timeout: float = 30.0  # seconds a writer waits on a locked SQLite file

    # API
    api_title: str = "Courier-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Endpoint registry
    https_only: bool = False
    registry_cache_ttl: float = 300.0  # seconds

    # Delivery
    delivery_timeout_seconds: float = 30.0
    response_body_limit: int = 1000
    user_agent: str = "Courier-Engine-Webhooks/0.1"

    # Worker pool
    worker_concurrency: int = 10
    worker_poll_interval: float = 1.0  # seconds
    processing_timeout: int = 300  # seconds before a claimed record is considered stalled
    sweep_interval: float = 60.0  # seconds
    run_worker_in_app: bool = False

    # Queue
    queue_backend: str = "database"  # "database" or "memory"
    queue_visibility_timeout: int = 60  # seconds
    queue_nack_delay: float = 5.0  # seconds

    @property
    def require_https(self) -> bool:
        """HTTPS endpoint URLs are mandatory in production."""
        return self.https_only or self.environment == "production"

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.queue_backend not in ("database", "memory"):
            raise RuntimeError(
                f"COURIER_QUEUE_BACKEND must be 'database' or 'memory', got: {self.queue_backend!r}"
            )

        if self.environment not in ("development", "test") and insecure_fields:
            env_vars = ", ".join(f"COURIER_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default admin key — set COURIER_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> CourierSettings:
    settings = CourierSettings()
    settings.validate_for_production()
    return settings
