"""
Logging setup and helpers.

Log lines are an event summary followed by key=value context, so they stay
greppable in plain handlers and readable in the Rich console handler.
"""

import logging
from typing import Any

from rich.logging import RichHandler

_DROP_LOG_FIELDS = frozenset(
    {
        "b64_json",
        "body",
        "content",
        "data",
        "headers",
        "image_bytes",
        "payload",
    }
)


def setup_logging(level: str = "INFO") -> None:
    """Install a Rich console handler on the package logger.

    Args:
        level: Log level name for the ``ai_batch_guard`` logger
    """
    logger = logging.getLogger("ai_batch_guard")
    logger.setLevel(level.upper())
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        logger.addHandler(RichHandler(rich_tracebacks=True, show_path=False))
    logger.propagate = False


def _format_log_message(*, event: str, **context: Any) -> str:
    parts = [event]
    filtered_context = {
        key: value
        for key, value in context.items()
        if value is not None and key not in _DROP_LOG_FIELDS
    }
    if filtered_context:
        parts.append(" ".join(f"{key}={value}" for key, value in filtered_context.items()))
    return " | ".join(parts)


def log_debug(*, logger: logging.Logger, event: str, **context: Any) -> None:
    logger.debug(_format_log_message(event=event, **context))


def log_info(*, logger: logging.Logger, event: str, **context: Any) -> None:
    logger.info(_format_log_message(event=event, **context))


def log_warning(*, logger: logging.Logger, event: str, **context: Any) -> None:
    logger.warning(_format_log_message(event=event, **context))


def log_error(*, logger: logging.Logger, event: str, exc_info: bool = False, **context: Any) -> None:
    logger.error(_format_log_message(event=event, **context), exc_info=exc_info)
