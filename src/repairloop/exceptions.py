"""Exceptions raised by repairloop."""

from __future__ import annotations


class RepairLoopError(Exception):
    """Base class for repairloop errors."""


class ConfigError(RepairLoopError, ValueError):
    """Invalid configuration key or value."""


class MissingCapabilityError(RepairLoopError):
    """A repair stage needs a collaborator that was not provided."""

    def __init__(self, capability: str):
        super().__init__(f"No {capability} configured")
        self.capability = capability
