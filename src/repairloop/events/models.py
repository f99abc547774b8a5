"""Repair loop event models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    # Classification
    FAILURE_CLASSIFIED = "failure_classified"
    REPEATED_FAILURE_DETECTED = "repeated_failure_detected"
    # Attempt lifecycle
    REPAIR_ATTEMPT_STARTED = "repair_attempt_started"
    REPAIR_ATTEMPT_COMPLETED = "repair_attempt_completed"
    SCOPE_EXPANSION_REQUESTED = "scope_expansion_requested"
    DIFF_PROPOSED = "diff_proposed"
    DIFF_APPLIED = "diff_applied"
    # Terminal
    REPAIR_LOOP_STOPPED = "repair_loop_stopped"
    REPAIR_LOOP_SUCCEEDED = "repair_loop_succeeded"


@dataclass
class Event:
    event_type: EventType
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)
    mission_id: str | None = None
    mode: str = "MISSION"
    stage: str = "repair"
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    channel: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "task_id": self.task_id,
            "mission_id": self.mission_id,
            "mode": self.mode,
            "stage": self.stage,
            "timestamp": self.timestamp,
            "payload": dict(self.data),
        }
