"""
Utility modules for the COSMO execution engine.
"""

from .logging import setup_logging, get_logger, ExecutionLogger
from .config_manager import ConfigManager
from .error_handling import (
    CosmoError,
    ConfigurationError,
    ResourceUnavailableError,
    UpstreamError,
    TransientUpstreamError,
    ClassificationError,
    FallbackError,
    ChainExecutionError,
    StepValidationError,
    RequestCancelledError,
    InvalidTransitionError,
    RequestNotFoundError,
    handle_error,
    is_retryable,
    compute_backoff_delay,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "ExecutionLogger",
    "ConfigManager",
    "CosmoError",
    "ConfigurationError",
    "ResourceUnavailableError",
    "UpstreamError",
    "TransientUpstreamError",
    "ClassificationError",
    "FallbackError",
    "ChainExecutionError",
    "StepValidationError",
    "RequestCancelledError",
    "InvalidTransitionError",
    "RequestNotFoundError",
    "handle_error",
    "is_retryable",
    "compute_backoff_delay",
]
