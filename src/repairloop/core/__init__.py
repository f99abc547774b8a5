"""Core module for repairloop.

`repairloop.core.config` is imported directly by callers; it depends on the
correction models, which in turn read `defaults`.
"""

from . import defaults

__all__ = ["defaults"]
