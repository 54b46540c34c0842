"""
Configuration management for opsguard

Provides pydantic-based configuration with environment variable support
and YAML file loading capabilities.
"""

import logging
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import OperationType, RiskLevel
from .observability.config import TelemetryConfig


DEFAULT_COOLDOWNS: dict[OperationType, int] = {
    OperationType.QUERY: 0,
    OperationType.RESTART: 30_000,
    OperationType.STOP: 60_000,
    OperationType.REBOOT: 120_000,
    OperationType.DELETE: 300_000,
}

DEFAULT_MAX_RETRIES: dict[OperationType, int] = {
    OperationType.QUERY: 3,
    OperationType.RESTART: 2,
    OperationType.STOP: 1,
    OperationType.REBOOT: 1,
    OperationType.DELETE: 0,
}

DEFAULT_RISK_MATRIX: dict[OperationType, RiskLevel] = {
    OperationType.QUERY: RiskLevel.SAFE,
    OperationType.RESTART: RiskLevel.MODERATE,
    OperationType.STOP: RiskLevel.DANGEROUS,
    OperationType.REBOOT: RiskLevel.DANGEROUS,
    OperationType.DELETE: RiskLevel.CRITICAL,
}

DEFAULT_CONFIRMATION_THRESHOLDS: dict[RiskLevel, bool] = {
    RiskLevel.SAFE: False,
    RiskLevel.MODERATE: False,
    RiskLevel.DANGEROUS: True,
    RiskLevel.CRITICAL: True,
}

_TABLE_DEFAULTS = {
    "default_cooldowns": DEFAULT_COOLDOWNS,
    "default_max_retries": DEFAULT_MAX_RETRIES,
    "risk_matrix": DEFAULT_RISK_MATRIX,
    "confirmation_thresholds": DEFAULT_CONFIRMATION_THRESHOLDS,
}


class SafetyConfig(BaseModel):
    """
    Engine-wide safety policy

    Loaded once at startup and treated as read-only by the engine; replace it
    wholesale to reconfigure. Each policy table may be given partially: the
    supplied entries are laid over the built-in defaults, so every operation
    type and risk level always has a value.
    """

    default_cooldowns: dict[OperationType, int] = Field(
        default_factory=lambda: dict(DEFAULT_COOLDOWNS)
    )
    default_max_retries: dict[OperationType, int] = Field(
        default_factory=lambda: dict(DEFAULT_MAX_RETRIES)
    )
    risk_matrix: dict[OperationType, RiskLevel] = Field(
        default_factory=lambda: dict(DEFAULT_RISK_MATRIX)
    )
    confirmation_thresholds: dict[RiskLevel, bool] = Field(
        default_factory=lambda: dict(DEFAULT_CONFIRMATION_THRESHOLDS)
    )
    correlation_window_ms: int = Field(default=60_000, ge=0)
    alert_retention_ms: int = Field(default=86_400_000, gt=0)

    @field_validator(
        "default_cooldowns", "default_max_retries", "risk_matrix", "confirmation_thresholds"
    )
    @classmethod
    def merge_with_defaults(cls, value: dict, info) -> dict:
        return {**_TABLE_DEFAULTS[info.field_name], **value}

    def cooldown_for(self, operation_type: OperationType) -> int:
        return self.default_cooldowns[operation_type]


class StorageConfig(BaseModel):
    """Durable key-value store used for snapshots"""

    backend: Literal["memory", "file", "redis"] = "memory"
    path: str = ".opsguard_state"
    redis_url: str = "redis://localhost:6379/0"
    key: str = "opsguard-safety-state"


class OpsguardConfig(BaseSettings):
    """Main opsguard configuration"""

    model_config = SettingsConfigDict(
        env_prefix="OPSGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    # Identity recorded on approvals when the caller does not name one
    actor: Optional[str] = None
    # Level of the opsguard package logger
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def load_from_file(cls, config_path: str = "opsguard.yml") -> "OpsguardConfig":
        """Load configuration from YAML file; environment variables fill the rest"""
        config_file = Path(config_path)
        config_data = {}

        if config_file.exists():
            try:
                with open(config_file, encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        return cls(**config_data)


# Global configuration instance
_config: Optional[OpsguardConfig] = None


def get_config() -> OpsguardConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = OpsguardConfig.load_from_file()
    return _config


def set_config(config: Optional[OpsguardConfig]) -> None:
    """Set (or clear, with None) the global configuration instance"""
    global _config
    _config = config
