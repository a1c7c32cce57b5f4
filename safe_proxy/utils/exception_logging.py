"""
Helpers for logging upstream failures without ever raising from the logger.
"""

import logging

import httpx


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


def describe_upstream_error(exception: BaseException) -> str:
    """Short, log-friendly classification of an httpx/websockets failure."""
    if isinstance(exception, httpx.TimeoutException):
        return "timeout"
    if isinstance(exception, httpx.ConnectError):
        return "connection_failed"
    if isinstance(exception, httpx.RemoteProtocolError):
        return "protocol_error"
    if isinstance(exception, httpx.TooManyRedirects):
        return "too_many_redirects"
    if isinstance(exception, OSError):
        return "network_error"
    return type(exception).__name__


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its type and message. Sub-exceptions of an
    exception group are logged one by one. Never raises.
    """
    try:
        sub_exceptions = list(getattr(exception, "exceptions", None) or [])
    except Exception:
        sub_exceptions = []

    try:
        if sub_exceptions:
            logger.log(
                level,
                f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: {_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        try:
            logger.log(level, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
