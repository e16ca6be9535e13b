"""
Event types for user actions and reminder lifecycle.

User actions (taken, skipped, snooze) arrive asynchronously from whatever
presents alerts and are dispatched through ReminderService.handle_event.
Lifecycle events are emitted by the service to its subscribers.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any
import time


class EventType(Enum):
    """All event types handled or emitted by the service."""

    # User actions (data: dose id, or dict with "dose_id")
    DOSE_TAKEN = auto()                 # User took the dose
    DOSE_SKIPPED = auto()               # User skipped the dose
    SNOOZE_REQUESTED = auto()           # Remind again later (data: dict with minutes)

    # Lifecycle
    ALERT_DELIVERED = auto()            # A scheduled alert fired (data: request)
    DOSE_MISSED = auto()                # Reconciliation gave up on a dose (data: dose id)
    LOW_STOCK = auto()                  # Stock dropped below threshold (data: medication id)

    # System
    SHUTDOWN = auto()                   # Graceful shutdown requested
    ERROR = auto()                      # Error propagation (data: dict with source, error)


USER_ACTIONS = frozenset({
    EventType.DOSE_TAKEN,
    EventType.DOSE_SKIPPED,
    EventType.SNOOZE_REQUESTED,
})


@dataclass
class Event:
    """A typed event flowing into or out of the service."""

    type: EventType
    data: Any = None
    timestamp: float = field(default_factory=time.monotonic)
    source: str = ""

    @property
    def dose_id(self) -> str:
        if isinstance(self.data, dict):
            return self.data.get("dose_id", "")
        return self.data or ""

    def __repr__(self):
        data_repr = repr(self.data)
        if len(data_repr) > 80:
            data_repr = data_repr[:77] + "..."
        return f"Event({self.type.name}, data={data_repr}, source={self.source!r})"
