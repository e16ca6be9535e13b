"""
Dose Schedule Generator

Expands a medication's schedule (clock times x days from start_date) into
concrete DoseInstance rows. Generation is deterministic for a given
medication and `now`.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from pillwatch import identifiers
from pillwatch.errors import ConfigurationError
from pillwatch.logger import get_logger
from pillwatch.models import DoseInstance, Medication
from pillwatch.timewindow import combine, is_same_day


class DoseScheduleGenerator:
    """Validates schedules and turns them into dose instances."""

    def __init__(self, config):
        self.config = config
        self.logger = get_logger(__name__, config)
        self.max_times_per_day = config.get("schedule.max_times_per_day", 10)
        self.max_days = config.get("schedule.max_days", 365)
        self.strict = config.get("schedule.strict_validation", True)
        self.preserve_taken_on_edit = config.get("schedule.preserve_taken_on_edit", False)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, medication: Medication) -> Medication:
        """Reject (strict) or clamp an out-of-range schedule.

        In clamping mode the medication is modified in place and returned.
        """
        problems = []
        if not medication.name or not medication.name.strip():
            problems.append("name is empty")
        if not 1 <= medication.times_per_day <= self.max_times_per_day:
            problems.append(
                f"times per day must be 1-{self.max_times_per_day}, "
                f"got {medication.times_per_day}"
            )
        if not 1 <= medication.days <= self.max_days:
            problems.append(f"days must be 1-{self.max_days}, got {medication.days}")
        if len(set(medication.times)) != len(medication.times):
            problems.append("clock times must be unique")
        if medication.stock < 0:
            problems.append(f"stock can't be negative, got {medication.stock}")

        if not problems:
            return medication

        if self.strict or not medication.times or not medication.name.strip():
            raise ConfigurationError(
                f"Invalid schedule for '{medication.name}': " + "; ".join(problems)
            )

        seen = []
        for t in medication.times:
            if t not in seen:
                seen.append(t)
        medication.times = seen[:self.max_times_per_day]
        medication.days = max(1, min(medication.days, self.max_days))
        medication.stock = max(0, medication.stock)
        self.logger.warning(
            f"Clamped schedule for '{medication.name}': " + "; ".join(problems)
        )
        return medication

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(self, medication: Medication, now: datetime) -> List[DoseInstance]:
        """Dose instances from today onward, chronological.

        Past days are dropped; every slot of today is kept even when its
        time has already passed, so a missed dose today stays visible.
        """
        self.validate(medication)

        doses = []
        for day_offset in range(medication.days):
            day = medication.start_date + timedelta(days=day_offset)
            for slot, clock in enumerate(medication.times):
                scheduled_at = combine(day, clock)
                if scheduled_at > now or is_same_day(scheduled_at, now):
                    doses.append(DoseInstance(
                        id=identifiers.dose_id(medication.id, day_offset, slot),
                        medication_id=medication.id,
                        scheduled_at=scheduled_at,
                        day_offset=day_offset,
                        slot=slot,
                    ))
        doses.sort(key=lambda d: (d.scheduled_at, d.slot))
        return doses

    def regenerate(self, store, medication: Medication, now: datetime,
                   preserve_taken: Optional[bool] = None) -> List[DoseInstance]:
        """Replace every stored dose of the medication with a fresh set.

        Prior taken/skipped state is discarded unless preserve_taken (or
        schedule.preserve_taken_on_edit) is set, in which case doses whose
        scheduled time survives the edit keep their state.
        """
        if preserve_taken is None:
            preserve_taken = self.preserve_taken_on_edit

        doses = self.generate(medication, now)

        if preserve_taken:
            previous = {d.scheduled_at: d for d in store.list_doses(medication.id)}
            carried = 0
            for dose in doses:
                old = previous.get(dose.scheduled_at)
                if old and not old.is_open:
                    dose.is_taken = old.is_taken
                    dose.taken_at = old.taken_at
                    dose.is_skipped = old.is_skipped
                    dose.stock_decremented = old.stock_decremented
                    carried += 1
            if carried:
                self.logger.info(
                    f"Kept state of {carried} dose(s) across edit of '{medication.name}'"
                )

        store.replace_doses(medication.id, doses)
        self.logger.info(
            f"Generated {len(doses)} doses for '{medication.name}' "
            f"({medication.times_per_day}x/day, {medication.days} days)"
        )
        return doses
