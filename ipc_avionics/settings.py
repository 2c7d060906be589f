"""Infrastructure settings for the IPC control tower.

All behaviour is configurable through environment variables (case
insensitive) or an optional ``.env`` file. Durations are seconds.

The kernel never reads settings directly: ``scheduler_config()`` and
``permission_table()`` turn them into the plain values the kernel is
constructed with.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ipc_control_tower.permissions.gate import default_permission_table
from ipc_control_tower.resources.rate_limiter import RateLimitConfig
from ipc_control_tower.types import Permission, SchedulerConfig
from ipc_protocols import LoggerProtocol


class Settings(BaseSettings):
    """Infrastructure settings."""

    # =========================================================================
    # PROCESS SIMULATION
    # =========================================================================
    process_min_duration: float = Field(default=1.0, ge=0.0)
    process_max_duration: float = Field(default=10.0, ge=0.0)
    process_check_interval: float = Field(default=0.1, gt=0.0, le=10.0)
    process_max_retries: int = Field(default=3, ge=0, le=100)

    # Probability that a simulated attempt fails
    process_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    # =========================================================================
    # QUEUES AND RETENTION
    # =========================================================================
    max_queue_size: int = Field(default=100, ge=0, le=100000)
    queue_max_age: float = Field(default=300.0, gt=0.0)
    process_retention: float = Field(default=3600.0, ge=0.0)
    cleanup_interval: float = Field(default=60.0, gt=0.0)

    # =========================================================================
    # ROLES
    # =========================================================================
    admin_max_processes: int = Field(default=10, ge=0, le=1000)
    operator_max_processes: int = Field(default=5, ge=0, le=1000)
    viewer_max_processes: int = Field(default=2, ge=0, le=1000)

    # =========================================================================
    # CONNECTIONS AND RATE LIMITING
    # =========================================================================
    max_connections: int = Field(default=100, ge=1, le=100000)
    rate_limit_window: float = Field(default=60.0, gt=0.0, le=3600.0)
    rate_limit_max: int = Field(default=100, ge=0, le=100000)

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================
    # HS256 keys shorter than the digest size are rejected
    token_secret: str = Field(default="local-dev-secret-change-me-before-deploy", min_length=32)
    token_ttl_seconds: int = Field(default=3600, ge=1, le=86400 * 30)

    # =========================================================================
    # HEALTH THRESHOLDS
    # =========================================================================
    alert_max_active_processes: int = Field(default=100, ge=1)
    alert_connection_warning_percent: float = Field(default=90.0, gt=0.0, le=100.0)

    # =========================================================================
    # API CONFIGURATION
    # =========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=3000, ge=1, le=65535)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_level: str = "INFO"
    log_json: bool = False

    # =========================================================================
    # VALIDATORS
    # =========================================================================
    @field_validator("log_level", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_duration_range(self) -> "Settings":
        if self.process_min_duration > self.process_max_duration:
            raise ValueError(
                "process_min_duration must not exceed process_max_duration"
            )
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # HELPER METHODS
    # =========================================================================
    def scheduler_config(self) -> SchedulerConfig:
        """Kernel timing, retry and capacity knobs."""
        return SchedulerConfig(
            min_duration=self.process_min_duration,
            max_duration=self.process_max_duration,
            check_interval=self.process_check_interval,
            max_retries=self.process_max_retries,
            failure_rate=self.process_failure_rate,
            max_queue_size=self.max_queue_size,
            queue_max_age=self.queue_max_age,
            process_retention=self.process_retention,
        )

    def permission_table(self) -> Dict[str, Permission]:
        return default_permission_table(
            admin_max=self.admin_max_processes,
            operator_max=self.operator_max_processes,
            viewer_max=self.viewer_max_processes,
        )

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.rate_limit_max,
            window_seconds=self.rate_limit_window,
        )

    def log_config(self, logger: LoggerProtocol) -> None:
        """Log the effective configuration (secrets excluded)."""
        logger.info(
            "settings_loaded",
            process_duration_range=(self.process_min_duration, self.process_max_duration),
            max_retries=self.process_max_retries,
            max_queue_size=self.max_queue_size,
            max_connections=self.max_connections,
            role_limits={
                "admin": self.admin_max_processes,
                "operator": self.operator_max_processes,
                "viewer": self.viewer_max_processes,
            },
        )


# =============================================================================
# GLOBAL SETTINGS (Lazy Initialization)
# =============================================================================

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings instance.

    Prefer dependency injection over this global getter for testability.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings_instance: Settings) -> None:
    """Set the global settings instance (bootstrap and tests)."""
    global _settings
    _settings = settings_instance


def reset_settings() -> None:
    """Forget the global instance; the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
