"""
Exception logging helpers that never raise, including for exception groups
produced by task groups around streamed responses.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, falling back to repr and then to the
    type name when ``__str__`` itself is broken.
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


def find_exception_in_exception_groups(exception: BaseException, target_type):
    """
    Recursively search an exception and its sub-exceptions for one of
    ``target_type``.

    Returns:
        The first matching exception, or None if not found
    """
    if isinstance(exception, target_type):
        return exception
    if not hasattr(exception, "exceptions"):
        return None
    for sub_exc in _safe_get_exceptions(exception):
        found = find_exception_in_exception_groups(sub_exc, target_type)
        if found is not None:
            return found
    return None


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, expanding exception groups into one record per
    sub-exception.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[Local]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    safe_prefix = _safe_str(prefix) if prefix is not None else ""
    sub_exceptions = (
        _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
    )
    try:
        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
                f"{_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: "
                    f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{safe_prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        # Last resort, the formatter itself failed
        try:
            logger.log(level, f"{safe_prefix} Exception (logging failed)")
        except Exception:
            pass


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception message, including sub-exceptions for exception groups.
    Never raises.
    """
    if exception is None:
        return "None"
    sub_exceptions = (
        _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
    )
    if not sub_exceptions:
        return _safe_str(exception)
    joined = "; ".join(
        f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}" for sub_exc in sub_exceptions
    )
    return f"{_safe_str(exception)} (Sub-exceptions: {joined})"
