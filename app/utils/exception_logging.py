"""
Exception logging helpers for the proxy's fail-open paths.

Bookkeeping failures (state store reads, breaker writes) are logged and not
re-raised. These helpers never raise, even when handed broken exception
objects.
"""

import logging


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
            try:
                return f"<{type(obj).__name__} object (string conversion failed)>"
            except Exception:
                return "<object (all string conversions failed)>"


def _causes(exception: BaseException, limit: int = 5) -> list:
    """Explicit ``raise ... from`` chain below ``exception``, nearest first."""
    chain = []
    try:
        current = exception.__cause__
        while current is not None and len(chain) < limit:
            chain.append(current)
            current = current.__cause__
    except Exception:
        pass
    return chain


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception as ``Type: message``, followed by its cause chain.

    Args:
        exception: The exception to format

    Returns:
        A formatted string describing the exception
    """
    try:
        if exception is None:
            return "None"
        parts = [f"{type(exception).__name__}: {_safe_str(exception)}"]
        for cause in _causes(exception):
            parts.append(f"caused by {type(cause).__name__}: {_safe_str(cause)}")
        return "; ".join(parts)
    except Exception:
        try:
            return f"<{type(exception).__name__} (formatting failed)>"
        except Exception:
            return "<exception (all formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception together with its cause chain.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[RateLimiter]", "[CircuitBreaker]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    safe_prefix = _safe_str(prefix) if prefix is not None else ""
    message = format_exception_message(exception)
    try:
        logger.log(
            level,
            f"{safe_prefix} Exception: {message}",
            exc_info=exception if isinstance(exception, BaseException) else False,
        )
    except Exception:
        try:
            logger.log(level, f"{safe_prefix} Exception (logging failed)")
        except Exception:
            # Nothing left to report through
            pass
