"""
Record types shared by the scheduler, the store and the reconciliation loop.

Medication and DoseInstance mirror the persisted rows. AlertPayload and
ScheduledAlertRequest are what gets handed to the delivery mechanism.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional


class InterruptionLevel(Enum):
    """How hard an alert is allowed to interrupt the user."""

    PASSIVE = "passive"
    ACTIVE = "active"
    TIME_SENSITIVE = "time_sensitive"
    CRITICAL = "critical"


class AlertCategory:
    MEDICATION_REMINDER = "MEDICATION_REMINDER"
    FOLLOW_UP_REMINDER = "FOLLOWUP_REMINDER"
    CRITICAL_ALERT = "CRITICAL_ALERT"


@dataclass
class Medication:
    """A medication and its dosing schedule."""

    name: str
    times: List[time]
    days: int
    start_date: date = field(default_factory=date.today)
    food_timing: str = ""
    stock: int = 0
    is_critical: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def times_per_day(self) -> int:
        return len(self.times)

    @property
    def display_name(self) -> str:
        return self.name or "Unnamed Medication"


@dataclass
class DoseInstance:
    """One concrete scheduled occurrence of taking a medication."""

    id: str
    medication_id: str
    scheduled_at: datetime
    day_offset: int
    slot: int
    is_taken: bool = False
    taken_at: Optional[datetime] = None
    is_skipped: bool = False
    missed_at: Optional[datetime] = None
    stock_decremented: bool = False

    @property
    def is_open(self) -> bool:
        """Not yet resolved by the user."""
        return not self.is_taken and not self.is_skipped


@dataclass
class AlertPayload:
    """Display content of an alert. Opaque to the scheduling logic."""

    title: str
    body: str = ""
    subtitle: str = ""
    urgency: str = ""
    interruption: InterruptionLevel = InterruptionLevel.ACTIVE
    badge: int = 1
    thread_key: str = ""
    category: str = AlertCategory.MEDICATION_REMINDER
    relevance: float = 0.5
    user_info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduledAlertRequest:
    """A request to deliver an alert at an absolute time."""

    identifier: str
    fire_at: datetime
    payload: AlertPayload

    def __repr__(self):
        return (f"ScheduledAlertRequest({self.identifier!r}, "
                f"fire_at={self.fire_at:%Y-%m-%d %H:%M}, "
                f"title={self.payload.title!r})")
