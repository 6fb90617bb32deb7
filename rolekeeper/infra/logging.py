"""Standardized logging utilities for the role keeper."""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, TypeVar

# Root logger name for all components
ROOT_LOGGER_NAME = "rolekeeper"

F = TypeVar("F", bound=Callable[..., Any])

# Attributes LogRecord already owns; passing them via ``extra`` raises KeyError
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a hierarchical logger under the rolekeeper namespace.

    Args:
        name: Module or component name. If None, returns the root logger.
              The name is prefixed with "rolekeeper." unless it already is.

    Example::

        from rolekeeper.infra.logging import get_logger
        log = get_logger(__name__)  # -> "rolekeeper.lifecycle"
    """
    if name is None:
        return logging.getLogger(ROOT_LOGGER_NAME)

    clean_name = name
    if clean_name.startswith(f"{ROOT_LOGGER_NAME}."):
        clean_name = clean_name[len(ROOT_LOGGER_NAME) + 1 :]

    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{clean_name}")


def structured_log(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Log a message with structured key=value fields appended.

    The fields are also attached to the record as attributes so handlers
    such as :class:`~rolekeeper.postgres_handler.PostgresHandler` can store
    them separately.

    Example::

        structured_log(log, logging.INFO, "grant claimed",
                      grant_id=12, subject_id=345, action="claimed")
        # Logs: "grant claimed grant_id=12 subject_id=345 action=claimed"
    """
    if fields:
        field_str = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} {field_str}"
    logger.log(
        level,
        message,
        extra={k: v for k, v in fields.items() if k not in _RESERVED},
    )


def log_errors(
    message: str = "Operation failed",
    *,
    reraise: bool = False,
    return_value: Any = None,
) -> Callable[[F], F]:
    """Decorator that logs exceptions raised by a coroutine.

    Args:
        message: Log message prefix for the error
        reraise: If True, re-raise the exception after logging
        return_value: Value to return if an exception occurs (when not reraising)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except Exception:
                get_logger(func.__module__).exception("%s in %s", message, func.__name__)
                if reraise:
                    raise
                return return_value

        return wrapper  # type: ignore[return-value]

    return decorator
