"""
Logging utilities for structured logging
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context fields the engine passes through extra=; anything else stays out of JSON lines
_FIELDS = (
    'user_id', 'subject_id', 'alarm_id', 'alarm_ids',
    'phase', 'phase_action', 'duration_ms', 'success',
    'event_type', 'old_state', 'new_state', 'decision',
    'error_type', 'error_message', 'context',
    'resting_rate', 'latest_bpm', 'score', 'window_min', 'attempt',
    'plan', 'dest_path', 'database', 'compare_and_swap',
)

# Never emitted, whatever a caller puts in extra=
_SECRET_KEYS = frozenset(('access_token', 'refresh_token', 'code_verifier', 'client_secret'))


class JSONFormatter(logging.Formatter):
    """One JSON object per line with the engine's context fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class SecretMaskingFilter(logging.Filter):
    """Mask credential material passed as extra fields before any handler sees it"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in _SECRET_KEYS:
            if hasattr(record, key):
                setattr(record, key, "***")
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json",
                  log_file: Optional[str] = None) -> None:
    """
    Setup structured logging for the alarm engine.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ("json", "simple" or "text")
        log_file: Optional log file path
    """
    # Get root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Create formatter
    if log_format.lower() == "json":
        formatter = JSONFormatter()
    elif log_format.lower() == "simple":
        formatter = logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecretMaskingFilter())
    root_logger.addHandler(console_handler)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(SecretMaskingFilter())
        root_logger.addHandler(file_handler)

    # Set specific logger levels
    logging.getLogger('requests').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger with alarm engine context.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_phase_start(logger: logging.Logger, phase: str, user_id: int,
                    **kwargs) -> None:
    """
    Log the start of a phase.

    Args:
        logger: Logger instance
        phase: Phase name
        user_id: User being evaluated
        **kwargs: Additional context
    """
    logger.info(
        f"Starting phase: {phase}",
        extra={
            "phase": phase,
            "user_id": user_id,
            "phase_action": "start",
            **kwargs
        }
    )


def log_phase_end(logger: logging.Logger, phase: str, user_id: int,
                  duration_ms: Optional[int] = None, success: bool = True,
                  **kwargs) -> None:
    """
    Log the end of a phase.

    Args:
        logger: Logger instance
        phase: Phase name
        user_id: User being evaluated
        duration_ms: Phase duration in milliseconds
        success: Whether phase was successful
        **kwargs: Additional context
    """
    logger.info(
        f"Completed phase: {phase} (success: {success})",
        extra={
            "phase": phase,
            "user_id": user_id,
            "phase_action": "end",
            "duration_ms": duration_ms,
            "success": success,
            **kwargs
        }
    )


def log_state_change(logger: logging.Logger, user_id: int,
                     old_state: str, new_state: str, **kwargs) -> None:
    """Log evaluation state changes"""
    logger.info(
        f"Evaluation state change: {old_state} -> {new_state}",
        extra={
            "user_id": user_id,
            "event_type": "state_change",
            "old_state": old_state,
            "new_state": new_state,
            **kwargs
        }
    )


def log_error(logger: logging.Logger, user_id: int, error: Exception,
              context: Optional[Dict[str, Any]] = None, level: int = logging.ERROR) -> None:
    """
    Log errors with context.

    Args:
        logger: Logger instance
        user_id: User being evaluated
        error: Exception that occurred
        context: Additional context
        level: Log level; absorbed failures are logged as warnings
    """
    logger.log(
        level,
        f"Error occurred: {str(error)}",
        extra={
            "user_id": user_id,
            "event_type": "error",
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": context or {}
        },
        exc_info=level >= logging.ERROR
    )


def log_decision(logger: logging.Logger, user_id: int, decision: Dict[str, Any]) -> None:
    logger.info(
        f"Trigger decision for user {user_id}: fire={decision.get('should_fire')}",
        extra={
            "user_id": user_id,
            "event_type": "decision",
            "decision": decision
        }
    )
