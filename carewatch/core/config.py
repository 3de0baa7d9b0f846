"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from carewatch.models.detection import DetectionConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CAREWATCH_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "CareWatch Monitoring Engine"
    app_version: str = "0.1.0"

    # Detection defaults (operator may change the live DetectionConfig at any time)
    sampling_interval_ms: int = Field(
        default=500,
        gt=0,
        description="Milliseconds between detection ticks",
    )
    sensitivity: float = Field(
        default=50.0,
        description="Initial alert sensitivity (clamped to 0-100)",
    )
    enable_fall_detection: bool = Field(
        default=True,
        description="Raise fall_detected alerts",
    )
    enable_motion_tracking: bool = Field(
        default=True,
        description="Run the detection pipeline at all",
    )

    # Pose source
    detection_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=60.0,
        description="Upper bound on a single pose detection call",
    )

    # Motion metric tuning
    motion_smoothing_alpha: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="EWMA weight of the newest displacement measurement",
    )
    motion_full_scale: float = Field(
        default=0.1,
        gt=0.0,
        le=1.0,
        description="Mean keypoint displacement (fraction of frame height) mapped to motion 1.0",
    )
    motion_history_size: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Number of recent motion values kept for live display",
    )

    # State machine / alerting
    status_debounce_ticks: int = Field(
        default=1,
        ge=1,
        le=100,
        description="Consecutive ticks a new status must persist before it is published",
    )
    alert_cooldown_seconds: float = Field(
        default=0.0,
        ge=0.0,
        le=3600.0,
        description="Suppress repeated candidates of the same type per subject (0 disables)",
    )
    alert_history_limit: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Default number of alerts returned by recent-alert views",
    )

    # Store
    store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Record store implementation",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
        pattern=r"^rediss?://.*",
    )
    redis_key_prefix: str = Field(
        default="carewatch",
        description="Prefix for all Redis keys and channels",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: Literal["text", "json"] = Field(
        default="text",
        description="Console log format",
    )
    log_file_path: str = Field(
        default="data/logs/carewatch.log",
        description="Path for rotating log file",
    )
    log_file_max_bytes: int = Field(
        default=10485760,  # 10MB
        description="Maximum size of each log file in bytes",
    )
    log_file_backup_count: int = Field(
        default=7,
        description="Number of backup log files to keep",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_file_path")
    @classmethod
    def validate_log_file_path(cls, v: str) -> str:
        """Reject a path that points at an existing directory."""
        if Path(v).is_dir():
            raise ValueError(f"log_file_path must be a file path, got directory: {v}")
        return v

    def default_detection_config(self) -> DetectionConfig:
        """Build a fresh live DetectionConfig from these settings."""
        return DetectionConfig(
            sensitivity=self.sensitivity,
            enable_fall_detection=self.enable_fall_detection,
            enable_motion_tracking=self.enable_motion_tracking,
            sampling_interval_ms=self.sampling_interval_ms,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
