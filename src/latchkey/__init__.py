"""Latchkey - secret reference resolution and lifecycle management."""

__version__ = "0.1.0"
