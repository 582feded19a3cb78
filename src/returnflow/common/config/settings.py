"""Configuration management - Centralized configuration for ReturnFlow.

Provides environment-aware configuration with sensible defaults.
All configuration is loaded from environment variables with fallbacks.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from returnflow.common.constants import (
    ControlServerConstants,
    DecisionConstants,
    PolicyConstants,
)
from returnflow.common.exceptions import ConfigurationError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", {"value": raw})


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", {"value": raw})


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _parse_business_hours(raw: str) -> Tuple[int, int]:
    try:
        start, end = (int(part) for part in raw.split("-", 1))
    except ValueError:
        raise ConfigurationError(
            "RETURNFLOW_BUSINESS_HOURS must look like '8-20'", {"value": raw}
        )
    return start, end


@dataclass
class Config:
    """Central configuration object for ReturnFlow.

    All settings can be overridden via environment variables prefixed with
    RETURNFLOW_.

    Example:
        RETURNFLOW_ENVIRONMENT=production
        RETURNFLOW_RATE_LIMIT_PER_MINUTE=200
        RETURNFLOW_STAGE_TIMEOUT_SECONDS=15
    """

    # Core settings
    environment: Environment = field(
        default_factory=lambda: Environment(
            os.getenv("RETURNFLOW_ENVIRONMENT", "development")
        )
    )
    debug: bool = field(
        default_factory=lambda: os.getenv("RETURNFLOW_DEBUG", "false").lower() == "true"
    )
    log_level: LogLevel = field(
        default_factory=lambda: LogLevel(os.getenv("RETURNFLOW_LOG_LEVEL", "INFO").upper())
    )

    # API settings
    api_host: str = field(
        default_factory=lambda: os.getenv("RETURNFLOW_API_HOST", "0.0.0.0")
    )
    api_port: int = field(
        default_factory=lambda: _env_int("RETURNFLOW_API_PORT", 8000)
    )

    # Control server gate
    rate_limit_per_minute: int = field(
        default_factory=lambda: _env_int(
            "RETURNFLOW_RATE_LIMIT_PER_MINUTE",
            ControlServerConstants.RATE_LIMIT_MAX_REQUESTS,
        )
    )
    rate_limit_window_seconds: float = field(
        default_factory=lambda: _env_float(
            "RETURNFLOW_RATE_LIMIT_WINDOW_SECONDS",
            ControlServerConstants.RATE_LIMIT_WINDOW_SECONDS,
        )
    )
    breaker_failure_threshold: int = field(
        default_factory=lambda: _env_int(
            "RETURNFLOW_BREAKER_FAILURE_THRESHOLD",
            ControlServerConstants.CIRCUIT_BREAKER_THRESHOLD,
        )
    )
    breaker_reset_seconds: float = field(
        default_factory=lambda: _env_float(
            "RETURNFLOW_BREAKER_RESET_SECONDS",
            ControlServerConstants.CIRCUIT_BREAKER_RESET_SECONDS,
        )
    )

    # Policy / decision engine
    policy_cache_ttl_seconds: float = field(
        default_factory=lambda: _env_float(
            "RETURNFLOW_POLICY_CACHE_TTL_SECONDS", PolicyConstants.CACHE_TTL_SECONDS
        )
    )
    stage_timeout_seconds: float = field(
        default_factory=lambda: _env_float(
            "RETURNFLOW_STAGE_TIMEOUT_SECONDS", DecisionConstants.STAGE_TIMEOUT_SECONDS
        )
    )
    policy_seed_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["RETURNFLOW_POLICY_SEED_FILE"])
            if os.getenv("RETURNFLOW_POLICY_SEED_FILE")
            else None
        )
    )

    # Audit settings
    audit_enabled: bool = field(
        default_factory=lambda: os.getenv("RETURNFLOW_AUDIT_ENABLED", "true").lower() == "true"
    )
    audit_log_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("RETURNFLOW_AUDIT_LOG_DIR", "./logs/audit")
        )
    )

    # AI capability
    openai_model: str = field(
        default_factory=lambda: os.getenv("RETURNFLOW_OPENAI_MODEL", "gpt-4o")
    )
    openai_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY")
    )

    # Calls
    call_providers: List[str] = field(
        default_factory=lambda: _env_list(
            "RETURNFLOW_CALL_PROVIDERS", "internal,elevenlabs,tavus"
        )
    )
    business_hours: Tuple[int, int] = field(
        default_factory=lambda: _parse_business_hours(
            os.getenv("RETURNFLOW_BUSINESS_HOURS", "8-20")
        )
    )

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.rate_limit_per_minute <= 0:
            raise ConfigurationError("RETURNFLOW_RATE_LIMIT_PER_MINUTE must be positive")
        if self.breaker_failure_threshold <= 0:
            raise ConfigurationError("RETURNFLOW_BREAKER_FAILURE_THRESHOLD must be positive")

        low = DecisionConstants.STAGE_TIMEOUT_MIN_SECONDS
        high = DecisionConstants.STAGE_TIMEOUT_MAX_SECONDS
        if not low <= self.stage_timeout_seconds <= high:
            raise ConfigurationError(
                f"RETURNFLOW_STAGE_TIMEOUT_SECONDS must be between {low:g} and {high:g}",
                {"value": self.stage_timeout_seconds},
            )

        start, end = self.business_hours
        if not 0 <= start < end <= 23:
            raise ConfigurationError(
                "RETURNFLOW_BUSINESS_HOURS must be an increasing range within 0-23",
                {"value": self.business_hours},
            )

        if self.audit_enabled:
            self.audit_log_dir.mkdir(parents=True, exist_ok=True)

        # Warn about debug in production
        if self.environment == Environment.PRODUCTION and self.debug:
            import warnings
            warnings.warn(
                "Debug mode is enabled in production environment",
                RuntimeWarning,
                stacklevel=2
            )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Returns:
        Config: The global configuration singleton.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
