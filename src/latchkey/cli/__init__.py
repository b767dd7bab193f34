"""Command-line interface for Latchkey."""

from latchkey.cli.main import main

__all__ = ["main"]
