"""Command-line interface for repairloop."""

from .app import app

__all__ = ["app"]
