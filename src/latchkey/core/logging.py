"""Structured logging configuration for Latchkey.

Provides structured logging with operation context propagation, secret
redaction, and log level management using structlog. Output always goes
to stderr so that machine-readable command output on stdout stays clean.
"""
# ruff: noqa: ARG001  # Processor signatures required by structlog API

import logging
import sys
from typing import Any, Literal

import structlog
from pydantic import SecretStr
from structlog.types import Processor

from latchkey.config.settings import Settings, get_settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

REDACTED = "[REDACTED]"

# Keys that must never carry a raw value into a log entry.
SENSITIVE_KEYS = frozenset(
    {
        "value",
        "secret",
        "secret_value",
        "plaintext",
        "password",
        "token",
        "api_key",
    }
)


class EnvironmentInfo:
    """Processor adding the deployment environment to log entries."""

    def __init__(self, environment: str):
        self.environment = environment

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict["environment"] = self.environment
        return event_dict


def redact_secrets(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask secret values that slipped into a log entry."""
    for key, value in list(event_dict.items()):
        if isinstance(value, SecretStr):
            event_dict[key] = REDACTED
        elif key.lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(
    log_level: LogLevel | None = None,
    json_format: bool | None = None,
    add_timestamp: bool = True,
    settings: Settings | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Override log level (default from settings)
        json_format: Use JSON output (default: settings.log_json, else True in production)
        add_timestamp: Include timestamp in log entries
        settings: Settings the command runs with (default: get_settings())
    """
    settings = settings or get_settings()

    effective_level = log_level or settings.log_level
    if json_format is not None:
        effective_json = json_format
    elif settings.log_json is not None:
        effective_json = settings.log_json
    else:
        effective_json = settings.environment == "production"

    numeric_level = getattr(logging, effective_level.upper(), logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        EnvironmentInfo(settings.environment),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    renderer: Processor
    if effective_json:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (uses caller module if None)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding temporary log context.

    Example:
        with LogContext(operation="apply", operation_id="..."):
            logger.info("apply_started")
            # All logs in this block will include operation and operation_id
    """

    def __init__(self, **kwargs: Any):
        """Initialize with context values to add."""
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        """Enter context and bind values."""
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context and unbind values."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
