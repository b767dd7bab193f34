"""Utility modules for Latchkey."""

from latchkey.utils.exceptions import (
    ConfigurationError,
    LatchkeyError,
)

__all__ = [
    "LatchkeyError",
    "ConfigurationError",
]
