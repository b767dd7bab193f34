"""Custom exceptions for Latchkey."""


class LatchkeyError(Exception):
    """Base exception for all Latchkey errors."""

    pass


class ConfigurationError(LatchkeyError):
    """Error in configuration or settings."""

    pass
