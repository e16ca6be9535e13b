"""
Reminder Service

The one object the presentation layer talks to. Constructed once at
process start with its collaborators and passed to whoever needs it;
there is no module-level instance.

Owns the timer wheel and its loop thread, the scheduling queue, the
cancellation manager, the scheduler and the reconciliation loop, and
routes user actions (taken, skipped, snooze) to them.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pillwatch import escalation
from pillwatch.cancellation import CancellationManager
from pillwatch.delivery import DeliveryMechanism, LocalDelivery
from pillwatch.errors import DoseNotEligible, PillwatchError, StoreConflict
from pillwatch.events import USER_ACTIONS, Event, EventType
from pillwatch.logger import get_logger
from pillwatch.models import DoseInstance, Medication
from pillwatch.reconciliation import ReconciliationLoop
from pillwatch.reminder_scheduler import ReminderScheduler
from pillwatch.schedule import DoseScheduleGenerator
from pillwatch.scheduling_queue import SchedulingQueue
from pillwatch.store import SqliteDoseStore
from pillwatch.timer_wheel import TimerLoop, TimerWheel
from pillwatch.timewindow import ELIGIBILITY_WINDOW, is_eligible, needs_follow_up


class ReminderService:
    """Dose reminders, escalation and reconciliation behind one API."""

    def __init__(self, config, store: Optional[SqliteDoseStore] = None,
                 delivery: Optional[DeliveryMechanism] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.clock = clock
        self.logger = get_logger(__name__, config)

        self.store = store or SqliteDoseStore(config)
        self.delivery = delivery or LocalDelivery(config)
        self.wheel = TimerWheel(config)
        self.queue = SchedulingQueue(config)
        self.cancellation = CancellationManager(config, self.delivery, self.wheel)
        self.generator = DoseScheduleGenerator(config)
        self.scheduler = ReminderScheduler(config, self.delivery, self.cancellation,
                                           self.queue, clock)
        self.reconciliation = ReconciliationLoop(
            config, self.store, self.delivery, self.wheel, self.cancellation,
            clock, scheduler=self.scheduler, on_missed=self._on_missed,
        )
        self.loop = TimerLoop(
            self.wheel, clock,
            poll_interval=config.get("timers.poll_interval_seconds", 5),
            config=config,
            hooks=[self._deliver_due],
        )

        self.default_snooze = config.get("snooze.default_minutes", 15)
        self._subscribers: List[Callable[[Event], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> int:
        """Start worker threads and rebuild state from the store."""
        self.logger.info("Starting reminder service")
        self.queue.start()
        self.loop.start()
        return self.run_startup_sweep()

    def stop(self):
        self.loop.stop()
        self.queue.stop()
        self._emit(Event(EventType.SHUTDOWN, source="service"))
        self.logger.info("Reminder service stopped")

    def subscribe(self, callback: Callable[[Event], None]):
        """Receive lifecycle events (delivered alerts, missed doses, low stock)."""
        self._subscribers.append(callback)

    def _emit(self, event: Event):
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Event subscriber failed on {event.type.name}: {e}")

    def _deliver_due(self, now: datetime):
        for request in self.delivery.deliver_due(now):
            self._emit(Event(EventType.ALERT_DELIVERED, request, source="delivery"))

    def _on_missed(self, dose_id: str):
        self._emit(Event(EventType.DOSE_MISSED, dose_id, source="reconciliation"))

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    def schedule_reminders(self, medication: Medication) -> int:
        return self.scheduler.schedule_medication(medication)

    def reschedule_in_background(self, medication: Medication) -> bool:
        """Queue a reschedule; dropped if one is already in flight."""
        args = self.scheduler.schedule_args(medication)
        args["generation"] = self.cancellation.generation(medication.id)
        return self.queue.submit(medication.id, lambda: self.scheduler.run_schedule(**args))

    def cancel_reminders(self, medication_id: str) -> int:
        return self.cancellation.cancel_medication(medication_id)

    def cancel_dose_follow_ups(self, dose_id: str) -> int:
        return self.cancellation.cancel_for_dose(dose_id)

    def start_monitoring(self, dose: DoseInstance, medication: Medication):
        return self.reconciliation.start_monitoring(dose, medication)

    def stop_monitoring(self, dose_id: str) -> bool:
        return self.reconciliation.stop_monitoring(dose_id)

    def run_startup_sweep(self) -> int:
        return self.reconciliation.run_startup_sweep(self.clock())

    def check_follow_ups_needed(self, medication: Medication) -> int:
        """Follow up on today's open doses that are over 30 minutes late.

        Critical doses go into monitoring; regular ones get a single nudge.
        Returns the number of doses acted on.
        """
        now = self.clock()
        acted = 0
        for dose in self.store.doses_for_day(medication.id, now.date()):
            if not needs_follow_up(dose, now):
                continue
            if medication.is_critical:
                if self.reconciliation.start_monitoring(dose, medication, now):
                    acted += 1
            elif self.scheduler.schedule_nudge(dose, medication, now):
                acted += 1
        return acted

    # ------------------------------------------------------------------
    # Medications
    # ------------------------------------------------------------------

    def add_medication(self, medication: Medication) -> Medication:
        self.generator.validate(medication)
        self.store.save_medication(medication)
        self.generator.regenerate(self.store, medication, self.clock(), preserve_taken=False)
        self.schedule_reminders(medication)
        self.reconciliation.arm_medication(medication, self.clock())
        self.logger.info(f"Added medication '{medication.name}' ({medication.id})")
        return medication

    def update_medication(self, medication: Medication,
                          preserve_taken: Optional[bool] = None) -> Medication:
        """Save an edited medication and rebuild its doses and alerts."""
        self.generator.validate(medication)
        self.cancel_reminders(medication.id)
        self.store.save_medication(medication)
        self.generator.regenerate(self.store, medication, self.clock(), preserve_taken)
        self.schedule_reminders(medication)
        self.reconciliation.arm_medication(medication, self.clock())
        self.logger.info(f"Updated medication '{medication.name}' ({medication.id})")
        return medication

    def delete_medication(self, medication_id: str) -> bool:
        self.cancel_reminders(medication_id)
        deleted = self.store.delete_medication(medication_id)
        if deleted:
            self.logger.info(f"Deleted medication {medication_id}")
        return deleted

    def refill_stock(self, medication_id: str, amount: int) -> int:
        """Add pills; reminders are rebuilt so low-stock subtitles update."""
        medication = self.store.get_medication(medication_id)
        if medication is None:
            raise StoreConflict(f"Medication {medication_id} no longer exists")
        medication.stock = max(0, medication.stock + amount)
        self.store.set_stock(medication_id, medication.stock)
        self.reschedule_in_background(medication)
        self.logger.info(f"Stock for '{medication.name}' now {medication.stock}")
        return medication.stock

    def adherence_rate(self, medication_id: str, days: int = 7) -> float:
        """Share of past doses in the last `days` days that were taken."""
        now = self.clock()
        past = self.store.doses_between(medication_id, now - timedelta(days=days), now)
        if not past:
            return 1.0
        return sum(1 for d in past if d.is_taken) / len(past)

    # ------------------------------------------------------------------
    # Dose actions
    # ------------------------------------------------------------------

    def mark_dose_taken(self, dose_id: str, enforce_window: bool = True) -> bool:
        """Record a dose as taken and stop everything still chasing it.

        Taking an already-taken dose is a no-op and returns False. Quick
        actions enforce the +/- 2 hour window and raise DoseNotEligible
        outside it; an explicit edit from the dose list passes
        enforce_window=False.
        """
        now = self.clock()
        dose = self.store.get_dose(dose_id)
        if dose is None:
            raise StoreConflict(f"Dose {dose_id} no longer exists")
        if dose.is_taken:
            return False
        if enforce_window and not is_eligible(dose, now):
            raise DoseNotEligible(
                f"Dose {dose_id} at {dose.scheduled_at:%Y-%m-%d %H:%M} is outside "
                f"its window at {now:%H:%M}"
            )

        changed, previous_stock = self.store.mark_taken(dose_id, now)
        if not changed:
            return False

        self.delivery.cancel([dose_id])
        self.cancellation.cancel_for_dose(dose_id)
        self.logger.info(f"Dose {dose_id} taken at {now:%H:%M}")

        if previous_stock is not None and previous_stock - 1 < escalation.LOW_STOCK_THRESHOLD:
            self._emit(Event(EventType.LOW_STOCK, dose.medication_id, source="service"))
        return True

    def mark_next_eligible_dose_taken(self, medication_id: str) -> Optional[DoseInstance]:
        """Take the open dose closest to now, if one is inside its window."""
        now = self.clock()
        candidates = [
            d for d in self.store.doses_between(
                medication_id, now - ELIGIBILITY_WINDOW, now + ELIGIBILITY_WINDOW
            )
            if is_eligible(d, now)
        ]
        if not candidates:
            return None
        dose = min(candidates, key=lambda d: abs(d.scheduled_at - now))
        if not self.mark_dose_taken(dose.id):
            return None
        return self.store.get_dose(dose.id)

    def skip_dose(self, dose_id: str) -> bool:
        if not self.store.mark_skipped(dose_id):
            return False
        self.delivery.cancel([dose_id])
        self.cancellation.cancel_for_dose(dose_id)
        self.logger.info(f"Dose {dose_id} skipped")
        return True

    def snooze_dose(self, dose_id: str, minutes: Optional[int] = None) -> bool:
        if minutes is None:
            minutes = self.default_snooze
        dose = self.store.get_dose(dose_id)
        if dose is None or not dose.is_open:
            return False
        medication = self.store.get_medication(dose.medication_id)
        if medication is None:
            return False
        return self.scheduler.schedule_snooze(dose, medication, minutes, self.clock())

    def undo_dose_taken(self, dose_id: str) -> bool:
        """Revert a take, restoring stock. Critical doses resume monitoring."""
        if not self.store.undo_taken(dose_id):
            return False
        self.logger.info(f"Undid take of dose {dose_id}")

        dose = self.store.get_dose(dose_id)
        medication = self.store.get_medication(dose.medication_id) if dose else None
        if dose and medication and medication.is_critical:
            self.reconciliation.start_monitoring(dose, medication, self.clock())
        return True

    def handle_event(self, event: Event) -> bool:
        """Dispatch a user action. Errors with a user message are emitted, not raised."""
        if event.type not in USER_ACTIONS:
            self.logger.debug(f"Ignoring event {event!r}")
            return False
        dose_id = event.dose_id
        try:
            if event.type == EventType.DOSE_TAKEN:
                return self.mark_dose_taken(dose_id)
            if event.type == EventType.DOSE_SKIPPED:
                return self.skip_dose(dose_id)
            if event.type == EventType.SNOOZE_REQUESTED:
                minutes = None
                if isinstance(event.data, dict):
                    minutes = event.data.get("minutes")
                return self.snooze_dose(dose_id, minutes)
        except (DoseNotEligible, StoreConflict) as e:
            self.logger.warning(f"{event.type.name} for {dose_id} failed: {e}")
            self._emit(Event(EventType.ERROR, {
                "source": event.type.name,
                "error": e.to_dict(),
                "user_message": e.user_message,
            }, source="service"))
            return False
        except PillwatchError as e:
            self.logger.error(f"{event.type.name} for {dose_id} failed: {e}")
            return False
        return False

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def badge_count(self) -> int:
        return self.scheduler.badge_count()

    def perform_maintenance(self) -> dict:
        return self.scheduler.perform_maintenance(self.clock())
