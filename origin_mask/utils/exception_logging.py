"""
Utility functions for exception logging that never raise themselves, including
for exception groups produced by background tasks.
"""

import logging

from origin_mask.errors import ProxyError, UpstreamError


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def format_exception_message(exception: Exception) -> str:
    """
    Format an exception message for logs and plain-text error bodies.

    Upstream errors mention the upstream status when they carry one, exception
    groups list their sub-exceptions.
    """
    try:
        if exception is None:
            return "None"

        if isinstance(exception, ProxyError):
            message = _safe_str(exception.message)
        else:
            message = _safe_str(exception)

        if isinstance(exception, UpstreamError) and exception.status is not None:
            if str(exception.status) not in message:
                message = f"{message} (upstream status {exception.status})"

        sub_exceptions = (
            _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
        )
        if sub_exceptions:
            joined = "; ".join(
                f"{type(sub).__name__}: {_safe_str(sub)}" for sub in sub_exceptions
            )
            return f"{message} (Sub-exceptions: {joined})"
        return message
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its sub-exceptions. Never throws.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[Capture]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        type_name = type(exception).__name__ if exception is not None else "None"
        # Proxy errors describe themselves, only unexpected ones get a traceback
        exc_info = (
            exception
            if exception is not None and not isinstance(exception, ProxyError)
            else None
        )
        logger.log(
            level,
            f"{safe_prefix} {type_name}: {format_exception_message(exception)}",
            exc_info=exc_info,
        )

        if exception is not None and hasattr(exception, "exceptions"):
            for i, sub_exc in enumerate(_safe_get_exceptions(exception), start=1):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i}: {type(sub_exc).__name__}: "
                    f"{_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception logging failed")
        except Exception:
            pass
