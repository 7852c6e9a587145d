"""
Logging configuration and utilities for Agent Conductor.

Every module logs through structlog with key-value context. Each task
execution runs in its own asyncio task, so context bound there with
``bind_task_context`` (task id, attempt) stays on that execution's lines.
"""

import logging
import sys
from typing import Any, List

import structlog

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _resolve_level(level: str) -> int:
    name = level.strip().upper()
    if name not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of: {', '.join(_LEVELS)}")
    return getattr(logging, name)


def _build_processors(json_format: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Route structlog through stdlib logging at the given level.

    Safe to call more than once; the last call wins.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: Render events as JSON lines instead of console text

    Raises:
        ValueError: If the level name is unknown
    """
    numeric_level = _resolve_level(level)

    # basicConfig is a no-op once the root logger has handlers, so the level is set explicitly
    logging.basicConfig(format="%(message)s", stream=sys.stdout)
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=_build_processors(json_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def configure_from_config(config: Any) -> None:
    """Apply the ``log_level`` and ``json_logging`` settings of a SystemConfig."""
    configure_logging(level=config.log_level, json_format=config.json_logging)


def get_logger(name: str, **context: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger, optionally pre-bound with context.

    Args:
        name: Logger name
        **context: Key-value pairs attached to every event

    Returns:
        structlog.stdlib.BoundLogger: Logger instance
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def bind_task_context(**context: Any) -> None:
    """Attach key-value pairs to every log line emitted by the current asyncio task."""
    structlog.contextvars.bind_contextvars(**context)
