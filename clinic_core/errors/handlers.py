# =============================================================================
# clinic_core/errors/handlers.py
# Error Handling Utilities for the Clinic Sync Layer
# =============================================================================

from __future__ import annotations
import functools
import logging
import traceback
from typing import Optional, Callable, TypeVar, Any, Dict

from clinic_core.logging import get_logger
from .exceptions import ClinicSyncError

logger = get_logger(__name__)

T = TypeVar("T")


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
    level: int = logging.ERROR,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    The sync layer owns no presentation, so instead of rendering the error
    this returns a serializable description the application can display.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message (uses error message if None)
        level: Logging level to report at

    Returns:
        Dict with error_type, code, message, details and recoverable
    """
    if isinstance(error, ClinicSyncError):
        payload = error.to_dict()
        if user_message:
            payload["message"] = user_message
    else:
        payload = {
            "error_type": error.__class__.__name__,
            "code": "UNKNOWN",
            "message": user_message or str(error),
            "details": {"traceback": traceback.format_exc()},
            "recoverable": True,
        }

    if log_error:
        logger.log(
            level,
            f"[{payload['code']}] {payload['message']}",
            extra={"details": payload["details"]},
            exc_info=level >= logging.ERROR,
        )

    return payload


class ErrorContext:
    """
    Context manager for error handling with automatic logging.

    Usage:
        with ErrorContext("Periodic drain", recoverable=True):
            coordinator.drain()

        # On error, logs "Error during: Periodic drain" and carries on
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.error: Optional[Dict[str, Any]] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            if isinstance(exc_val, ClinicSyncError):
                self.error = handle_error(exc_val)
            else:
                self.error = handle_error(
                    exc_val,
                    user_message=f"Error during: {self.operation}",
                )

            # Suppress exception if recoverable
            return self.recoverable

        logger.debug(f"Completed: {self.operation}")
        return False


def error_boundary(
    default_return: Any = None,
    log: bool = True,
):
    """
    Decorator to wrap functions with error handling.

    Used for callables run by background timers, where an exception
    would otherwise kill the timer thread.

    Usage:
        @error_boundary(default_return=False)
        def tick() -> bool:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log:
                    logger.error(
                        f"Error in {func.__name__}: {e}",
                        exc_info=True,
                    )
                return default_return

        return wrapper

    return decorator
