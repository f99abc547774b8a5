"""Repair loop event system."""

from .manager import ALL_CHANNEL, EventManager
from .models import Event, EventType

__all__ = ["ALL_CHANNEL", "EventManager", "Event", "EventType"]
