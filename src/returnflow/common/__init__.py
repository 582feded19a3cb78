"""Common utilities - logging, config, exceptions."""

from returnflow.common.logging.logger import configure_logging, get_logger
from returnflow.common.config import Config, get_config, reset_config
from returnflow.common.exceptions import (
    ReturnFlowException,
    ConfigurationError,
    InvalidRequestError,
    RateLimitExceededError,
    ServiceUnavailableError,
    UpstreamFailureError,
    StageTimeoutError,
    PolicyNotFoundError,
    SessionNotFoundError,
    AuditError,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Config
    "Config",
    "get_config",
    "reset_config",
    # Exceptions
    "ReturnFlowException",
    "ConfigurationError",
    "InvalidRequestError",
    "RateLimitExceededError",
    "ServiceUnavailableError",
    "UpstreamFailureError",
    "StageTimeoutError",
    "PolicyNotFoundError",
    "SessionNotFoundError",
    "AuditError",
]
