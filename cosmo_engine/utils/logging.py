"""
Logging utilities for the COSMO execution engine.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, List, Optional

from ..models.config import LoggingConfig

ROOT_LOGGER_NAME = "cosmo_engine"


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure the ``cosmo_engine`` logger tree.

    Replaces any handlers installed by an earlier call, so the demo and tests
    can call it repeatedly.

    Args:
        config: Logging configuration settings
    """
    engine_logger = logging.getLogger(ROOT_LOGGER_NAME)
    engine_logger.setLevel(config.level)
    engine_logger.handlers.clear()

    formatter = logging.Formatter(config.format)
    for handler in _build_handlers(config):
        handler.setLevel(config.level)
        handler.setFormatter(formatter)
        engine_logger.addHandler(handler)

    # Engine records stay out of the application's root handlers
    engine_logger.propagate = False


def _build_handlers(config: LoggingConfig) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if config.enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if config.enable_file and config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            filename=config.file_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding='utf-8'
        ))
    return handlers


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the cosmo_engine namespace.

    Module names (``__name__``) already inside the package are used as is;
    short names such as ``"execution"`` are prefixed.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class ExecutionLogger:
    """
    Structured logger for routing decisions, step traces and queue events.

    Every record carries an ``event_type`` attribute plus event fields via
    ``extra`` so handlers can filter or ship them as structured data.
    """

    def __init__(self, name: str = "execution"):
        self.logger = get_logger(name)

    def _event(self, level: int, message: str, event_type: str, exc_info: bool = False,
               **fields: Any) -> None:
        self.logger.log(level, message, extra={"event_type": event_type, **fields}, exc_info=exc_info)

    def log_routing_decision(self, decision_data: dict) -> None:
        """Log the plan chosen for a request."""
        self._event(
            logging.INFO,
            f"Request {decision_data.get('request_id')} -> {decision_data.get('action_type')} "
            f"{decision_data.get('action_key') or decision_data.get('chain_key') or ''} "
            f"on {decision_data.get('model_id') or 'local'}",
            "routing_decision", data=decision_data
        )

    def log_fallback(self, original_target: str, fallback_target: str, reason: str) -> None:
        """Log a switch from a failed chain or model to its fallback."""
        self._event(
            logging.WARNING, f"Falling back from {original_target} to {fallback_target}: {reason}",
            "fallback", original_target=original_target, fallback_target=fallback_target, reason=reason
        )

    def log_step(self, chain_key: str, step_data: dict) -> None:
        """Log one chain step invocation with its input, output and duration."""
        self._event(
            logging.INFO,
            f"Step {chain_key}/{step_data.get('step_key')} {step_data.get('status')} "
            f"in {step_data.get('duration_ms', 0.0):.1f}ms",
            "step", chain_key=chain_key, data=step_data
        )

    def log_queue_transition(self, request_id: str, old_status: str, new_status: str,
                             detail: Optional[str] = None) -> None:
        """Log a queue item status change."""
        message = f"Request {request_id}: {old_status} -> {new_status}"
        if detail:
            message += f" ({detail})"
        self._event(logging.INFO, message, "queue_transition",
                    request_id=request_id, old_status=old_status, new_status=new_status)

    def log_batch(self, batch_id: str, batch_data: dict) -> None:
        """Log a batch lifecycle event."""
        self._event(
            logging.INFO,
            f"Batch {batch_id} {batch_data.get('status')} ({batch_data.get('size', 0)} requests)",
            "batch", batch_id=batch_id, data=batch_data
        )

    def log_error(self, error: Exception, context: Optional[dict] = None) -> None:
        """Log an error with optional context."""
        self._event(logging.ERROR, f"{type(error).__name__}: {error}", "error", exc_info=True,
                    error_type=type(error).__name__, context=context or {})
