"""
Escalation Policy

Pure decision table for unacknowledged critical doses, plus the alert
content for each level. Nothing here touches the store or the delivery
mechanism.

    elapsed since scheduled    level   urgency
    < 30 min                   0       (none)
    30 - 60 min                1       Reminder
    60 - 120 min               2       Important
    120 - 240 min              3       Urgent
    >= 240 min                 4       Critical
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from pillwatch.models import AlertCategory, AlertPayload, InterruptionLevel


NONE = 0
MAX_LEVEL = 4

NUDGE_DELAY = timedelta(minutes=5)
LOW_STOCK_THRESHOLD = 5


@dataclass(frozen=True)
class EscalationStep:
    level: int
    after: timedelta
    urgency: str
    interruption: InterruptionLevel


LADDER: List[EscalationStep] = [
    EscalationStep(1, timedelta(minutes=30), "Reminder", InterruptionLevel.TIME_SENSITIVE),
    EscalationStep(2, timedelta(minutes=60), "Important", InterruptionLevel.CRITICAL),
    EscalationStep(3, timedelta(minutes=120), "Urgent", InterruptionLevel.CRITICAL),
    EscalationStep(4, timedelta(minutes=240), "Critical", InterruptionLevel.CRITICAL),
]


def escalation_level(elapsed: timedelta) -> int:
    """Level due after `elapsed` since the scheduled moment (0 = none)."""
    level = NONE
    for step in LADDER:
        if elapsed >= step.after:
            level = step.level
    return level


def step_for(level: int) -> Optional[EscalationStep]:
    for step in LADDER:
        if step.level == level:
            return step
    return None


def follow_up_delays() -> List[timedelta]:
    """Fixed delays for pre-scheduled follow-ups, levels 1..4 in order."""
    return [step.after for step in LADDER]


# ----------------------------------------------------------------------
# Content
# ----------------------------------------------------------------------

def stock_subtitle(stock: int) -> str:
    if stock == 0:
        return "Out of stock - please refill"
    if 0 < stock < LOW_STOCK_THRESHOLD:
        return f"Only {stock} pills remaining"
    return ""


def base_content(medication_id: str, name: str, food_timing: str,
                 dose_time: datetime, stock: int, is_critical: bool,
                 dose_identifier: str) -> AlertPayload:
    """Content for the on-time reminder of a dose."""
    subtitle = stock_subtitle(stock)
    if is_critical and not subtitle:
        subtitle = "Critical medication reminder"

    return AlertPayload(
        title=f"Time for {name}",
        body=food_timing,
        subtitle=subtitle,
        interruption=(InterruptionLevel.TIME_SENSITIVE if is_critical
                      else InterruptionLevel.ACTIVE),
        badge=1,
        thread_key=medication_id,
        category=(AlertCategory.CRITICAL_ALERT if is_critical
                  else AlertCategory.MEDICATION_REMINDER),
        relevance=1.0 if is_critical else 0.5,
        user_info={
            "medication_id": medication_id,
            "medication_name": name,
            "dose_time": dose_time.isoformat(),
            "dose_id": dose_identifier,
            "stock": stock,
            "is_critical": is_critical,
            "is_follow_up": False,
        },
    )


def follow_up_content(level: int, medication_id: str, name: str,
                      food_timing: str, dose_time: datetime,
                      dose_identifier: str) -> AlertPayload:
    """Content for a pre-scheduled escalating follow-up."""
    step = step_for(level)
    if step is None:
        raise ValueError(f"No escalation level {level}")

    return AlertPayload(
        title=f"{step.urgency}: {name}",
        body=f"You haven't taken your critical medication. {food_timing}".strip(),
        subtitle=f"{step.urgency} - Please take immediately",
        urgency=step.urgency,
        interruption=step.interruption,
        badge=level + 1,
        thread_key=medication_id,
        category=AlertCategory.CRITICAL_ALERT,
        relevance=(len(LADDER) - (level - 1)) / len(LADDER),
        user_info={
            "medication_id": medication_id,
            "medication_name": name,
            "dose_time": dose_time.isoformat(),
            "dose_id": dose_identifier,
            "is_critical": True,
            "is_follow_up": True,
            "follow_up_level": level,
        },
    )


def persistent_content(level: int, medication_id: str, name: str,
                       food_timing: str, dose_time: datetime,
                       dose_identifier: str) -> AlertPayload:
    """Content for a reminder raised by a reconciliation tick."""
    if level <= 1:
        title = f"Reminder: {name}"
        body = f"Your critical medication is overdue. {food_timing}"
    elif level == 2:
        title = f"Urgent: {name}"
        body = f"Please take your critical medication immediately! {food_timing}"
    else:
        title = f"CRITICAL: {name}"
        body = "Your critical medication is severely overdue! Take it now or contact your doctor."

    step = step_for(level)
    return AlertPayload(
        title=title,
        body=body.strip(),
        urgency=step.urgency if step else "",
        interruption=InterruptionLevel.TIME_SENSITIVE,
        badge=level + 1,
        thread_key=f"critical_{medication_id}",
        category=AlertCategory.CRITICAL_ALERT,
        relevance=1.0,
        user_info={
            "medication_id": medication_id,
            "medication_name": name,
            "dose_time": dose_time.isoformat(),
            "dose_id": dose_identifier,
            "is_critical": True,
            "is_persistent": True,
            "follow_up_level": level,
        },
    )


def nudge_content(medication_id: str, name: str, food_timing: str,
                  dose_time: datetime, dose_identifier: str) -> AlertPayload:
    """The single "you haven't taken this yet" follow-up for regular doses."""
    return AlertPayload(
        title=f"Follow-up: {name}",
        body=f"You haven't taken your medication yet. {food_timing}".strip(),
        interruption=InterruptionLevel.TIME_SENSITIVE,
        thread_key=medication_id,
        category=AlertCategory.FOLLOW_UP_REMINDER,
        relevance=0.8,
        user_info={
            "medication_id": medication_id,
            "medication_name": name,
            "dose_time": dose_time.isoformat(),
            "dose_id": dose_identifier,
            "is_critical": False,
            "is_follow_up": True,
        },
    )


def snooze_content(medication_id: str, name: str, food_timing: str,
                   dose_identifier: str) -> AlertPayload:
    return AlertPayload(
        title=f"Snooze: {name}",
        body=food_timing or "Time to take your medication",
        thread_key=medication_id,
        category=AlertCategory.MEDICATION_REMINDER,
        user_info={
            "medication_id": medication_id,
            "medication_name": name,
            "dose_id": dose_identifier,
            "is_snooze": True,
        },
    )
