"""Core services and utilities for Latchkey."""

from .logging import (
    LogContext,
    get_logger,
    setup_logging,
)

__all__ = [
    "LogContext",
    "get_logger",
    "setup_logging",
]
