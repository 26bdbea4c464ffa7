"""
Error handling utilities and custom exceptions for the COSMO execution engine.
"""

import random
from typing import Optional, Dict, Any


class CosmoError(Exception):
    """Base exception for all COSMO engine errors."""

    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(CosmoError):
    """Raised for missing or invalid intent, chain, model or condition references."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)
        self.config_key = config_key


class ResourceUnavailableError(CosmoError):
    """Raised when a required resource is unavailable."""

    def __init__(self, message: str, resource_type: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="RESOURCE_UNAVAILABLE", **kwargs)
        self.resource_type = resource_type


class UpstreamError(CosmoError):
    """Raised when an upstream model or API call fails."""

    def __init__(self, message: str, api_name: Optional[str] = None,
                 status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "API_ERROR")
        super().__init__(message, **kwargs)
        self.api_name = api_name
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Rate limit, timeout or network failure; safe to retry."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "TRANSIENT_API_ERROR")
        super().__init__(message, **kwargs)


class ClassificationError(CosmoError):
    """Raised when the model-based intent classification call fails."""

    def __init__(self, message: str, request_content: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CLASSIFICATION_ERROR", **kwargs)
        self.request_content = request_content


class FallbackError(CosmoError):
    """Raised when all fallback mechanisms fail."""

    def __init__(self, message: str, attempted_targets: Optional[list] = None, **kwargs):
        super().__init__(message, error_code="FALLBACK_ERROR", **kwargs)
        self.attempted_targets = attempted_targets or []


class ChainExecutionError(CosmoError):
    """Raised when a function chain ends in a failed state."""

    def __init__(self, message: str, chain_key: Optional[str] = None,
                 step_key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CHAIN_FAILED", **kwargs)
        self.chain_key = chain_key
        self.step_key = step_key


class StepValidationError(CosmoError):
    """Raised when a validation step rejects the chain's working data."""

    def __init__(self, message: str, step_key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_FAILED", **kwargs)
        self.step_key = step_key


class RequestCancelledError(CosmoError):
    """Raised at a step boundary once cancellation has been requested."""

    def __init__(self, message: str = "Request cancelled", **kwargs):
        super().__init__(message, error_code="CANCELLED", **kwargs)


class InvalidTransitionError(CosmoError):
    """Raised for an illegal state-machine transition or queue operation."""

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="INVALID_TRANSITION", **kwargs)
        self.current_state = current_state


class RequestNotFoundError(CosmoError):
    """Raised when a request id is unknown."""

    def __init__(self, message: str, request_id: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="NOT_FOUND", **kwargs)
        self.request_id = request_id


def is_retryable(error: BaseException) -> bool:
    """Return True when a failure should be retried by the scheduler."""
    return bool(getattr(error, "retryable", False))


def handle_error(error: Exception, logger=None, context: Optional[Dict[str, Any]] = None) -> CosmoError:
    """
    Convert generic exceptions to CosmoError instances.

    Args:
        error: The original exception
        logger: Optional ExecutionLogger for error reporting
        context: Additional context information

    Returns:
        CosmoError instance
    """
    if isinstance(error, CosmoError):
        cosmo_error = error
    elif isinstance(error, ValueError):
        cosmo_error = ConfigurationError(str(error), context=context)
    elif isinstance(error, (ConnectionError, TimeoutError)):
        cosmo_error = TransientUpstreamError(
            f"{type(error).__name__}: {error}", context=context
        )
    else:
        cosmo_error = CosmoError(str(error), context=context)

    if logger:
        logger.log_error(cosmo_error, context)

    return cosmo_error


def compute_backoff_delay(attempt: int, base_delay: float, max_delay: float,
                          jitter: bool = False) -> float:
    """
    Exponential backoff delay: base * 2^attempt, capped.

    Args:
        attempt: Retry number (1 for the first retry)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Add 10-30% random jitter before applying the cap
    """
    delay = base_delay * (2 ** attempt)
    if jitter and delay > 0:
        delay += random.uniform(0.1, 0.3) * delay
    return min(delay, max_delay)
