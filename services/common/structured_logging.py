"""Centralized logging utilities for the music voice service."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import IO, Any

import structlog


_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Third-party loggers clamped to the given level regardless of the root level.
_NOISY_LOGGERS: dict[str, int] = {
    "discord.gateway": logging.INFO,
    "discord.client": logging.INFO,
    "discord.http": logging.WARNING,
    "discord.voice_state": logging.WARNING,
    "discord.voice_client": logging.WARNING,
    "discord.player": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def _numeric_level(level: str) -> int:
    name = (level or "").upper()
    return _LEVELS.get(name, logging.INFO)


Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]


def _add_service(service_name: str | None) -> Processor:
    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if service_name and "service" not in event_dict:
            event_dict["service"] = service_name
        return event_dict

    return processor


def configure_logging(
    level: str = "INFO",
    *,
    json_logs: bool = True,
    service_name: str | None = None,
    stream: IO[str] | None = None,
    full_tracebacks: bool | None = None,
) -> None:
    """Configure structlog + stdlib logging for the process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to output JSON formatted logs (True) or console format (False)
        service_name: Optional service name to include in all log messages
        stream: Optional output stream for logs (defaults to sys.stdout).
                Useful for testing to capture log output to StringIO.
        full_tracebacks: Whether to use full tracebacks (dict_tracebacks) or
                        summary format (format_exc_info). If None, defaults to
                        full tracebacks for DEBUG level, summary for INFO+.
                        Can also be set via LOG_FULL_TRACEBACKS environment variable.

    Example:
        # Production usage
        configure_logging(level="INFO", json_logs=True, service_name="music")

        # Test usage
        from io import StringIO
        output = StringIO()
        configure_logging(level="INFO", json_logs=True, stream=output)
    """

    numeric_level = _numeric_level(level)
    output_stream = stream if stream is not None else sys.stdout

    if full_tracebacks is None:
        env_full_tracebacks = os.getenv("LOG_FULL_TRACEBACKS", "").lower()
        if env_full_tracebacks in ("true", "1", "yes"):
            full_tracebacks = True
        elif env_full_tracebacks in ("false", "0", "no"):
            full_tracebacks = False
        else:
            full_tracebacks = numeric_level <= logging.DEBUG

    exception_processor = (
        structlog.processors.dict_tracebacks
        if full_tracebacks
        else structlog.processors.format_exc_info
    )

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _add_service(service_name),
        exception_processor,
    ]
    if json_logs:
        formatter_processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ]
    else:
        formatter_processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(),
        ]

    handler = logging.StreamHandler(output_stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=formatter_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
    logging.captureWarnings(True)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, numeric_level))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(
    name: str,
    *,
    correlation_id: str | None = None,
    service_name: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound with standard metadata."""

    logger = structlog.stdlib.get_logger(name)
    if correlation_id:
        logger = logger.bind(correlation_id=correlation_id)
    if service_name:
        logger = logger.bind(service=service_name)
    return logger


@contextmanager
def correlation_context(
    correlation_id: str | None,
) -> Generator[structlog.stdlib.BoundLogger, None, None]:
    """Context manager for correlation ID that ensures cleanup.

    Binds correlation ID to context variables and restores the previous value
    (or clears it) once the block exits.

    Args:
        correlation_id: Optional correlation ID to bind

    Yields:
        Logger with correlation ID in context

    Example:
        with correlation_context(connection.id) as logger:
            logger.info("control.command_received")
    """
    previous_correlation_id = None
    if correlation_id:
        previous_correlation_id = structlog.contextvars.get_contextvars().get(
            "correlation_id"
        )
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

    logger = structlog.stdlib.get_logger()

    try:
        yield logger
    finally:
        if correlation_id:
            if previous_correlation_id is not None:
                structlog.contextvars.bind_contextvars(
                    correlation_id=previous_correlation_id
                )
            else:
                structlog.contextvars.unbind_contextvars("correlation_id")


__all__ = [
    "configure_logging",
    "correlation_context",
    "get_logger",
]
