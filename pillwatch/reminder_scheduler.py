"""
Reminder Scheduler

Turns a medication's future doses into scheduled alert requests: one base
reminder per dose plus, for critical medications, the fixed escalation
ladder at +30/+60/+120/+240 minutes. Submission is best-effort against a
capacity-capped delivery mechanism; earliest doses win when the cap bites.
"""

import threading
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence

from pillwatch import escalation, identifiers
from pillwatch.cancellation import CancellationManager
from pillwatch.delivery import DeliveryMechanism
from pillwatch.errors import CapacityExceeded, DeliveryRejected
from pillwatch.logger import get_logger
from pillwatch.models import DoseInstance, Medication, ScheduledAlertRequest
from pillwatch.scheduling_queue import SchedulingQueue
from pillwatch.timewindow import combine, parse_clock_time


def display_name(title: str) -> str:
    """"Take Aspirin" -> "Aspirin"."""
    return title[5:] if title.startswith("Take ") else title


class ReminderScheduler:
    """Schedules base reminders and escalating follow-ups per medication."""

    def __init__(self, config, delivery: DeliveryMechanism,
                 cancellation: CancellationManager,
                 queue: Optional[SchedulingQueue] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.delivery = delivery
        self.cancellation = cancellation
        self.queue = queue or SchedulingQueue(config)
        self.clock = clock
        self.logger = get_logger(__name__, config)

        self.capacity = config.get("scheduler.capacity", 64)
        self.cancel_timeout = config.get("scheduler.cancel_timeout_seconds", 5.0)
        self.nudge_delay = timedelta(
            minutes=config.get("escalation.nudge_delay_minutes",
                               escalation.NUDGE_DELAY.seconds // 60)
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, medication_id: str, title: str, body: str,
                 clock_times: Sequence, days: int, stock: int = 0,
                 is_critical: bool = False,
                 start_date: Optional[date] = None) -> int:
        """Replace the medication's alerts with a fresh generation.

        A call for a medication that is already being scheduled is
        dropped. Returns the number of requests the delivery mechanism
        accepted.
        """
        if not self.queue.claim(medication_id):
            self.logger.info(f"Already scheduling notifications for {medication_id}, skipping")
            return 0
        try:
            generation = self.cancellation.generation(medication_id)
            return self.run_schedule(medication_id, title, body, clock_times,
                                     days, stock, is_critical, start_date,
                                     generation=generation)
        finally:
            self.queue.release(medication_id)

    def schedule_medication(self, medication: Medication) -> int:
        return self.schedule(**self.schedule_args(medication))

    @staticmethod
    def schedule_args(medication: Medication) -> dict:
        return dict(
            medication_id=medication.id,
            title=f"Take {medication.name}",
            body=medication.food_timing,
            clock_times=medication.times,
            days=medication.days,
            stock=medication.stock,
            is_critical=medication.is_critical,
            start_date=medication.start_date,
        )

    def run_schedule(self, medication_id: str, title: str, body: str,
                     clock_times: Sequence, days: int, stock: int = 0,
                     is_critical: bool = False,
                     start_date: Optional[date] = None,
                     generation: Optional[int] = None) -> int:
        """Body of schedule(); the caller must hold the queue claim.

        `generation` is the token the request was made under. A cancel
        that lands after it was taken voids the whole batch.
        """
        if generation is None:
            generation = self.cancellation.generation(medication_id)
        self._cancel_existing(medication_id)
        if self.cancellation.generation(medication_id) != generation:
            self.logger.info(
                f"Scheduling for {medication_id} superseded by a cancel, skipping"
            )
            return 0

        now = self.clock()
        groups = self.build_requests(medication_id, title, body, clock_times,
                                     days, stock, is_critical, start_date, now)
        requests = self._apply_capacity(medication_id, groups)

        submitted = self._submit_batch(medication_id, requests, generation)
        kind = "critical " if is_critical else ""
        self.logger.info(
            f"Scheduled {len(submitted)} {kind}notifications for {medication_id}"
        )
        return len(submitted)

    def _cancel_existing(self, medication_id: str):
        """Withdraw the previous batch's alerts, waiting a bounded time."""
        done = threading.Event()

        def _cancel():
            try:
                self.cancellation.withdraw_scheduled(medication_id)
            finally:
                done.set()

        worker = threading.Thread(target=_cancel, daemon=True,
                                  name=f"cancel-{medication_id}")
        worker.start()
        if not done.wait(self.cancel_timeout):
            self.logger.warning(
                f"Cancel for {medication_id} unconfirmed after "
                f"{self.cancel_timeout}s, scheduling anyway"
            )

    def build_requests(self, medication_id: str, title: str, body: str,
                       clock_times: Sequence, days: int, stock: int,
                       is_critical: bool, start_date: Optional[date],
                       now: datetime) -> List[List[ScheduledAlertRequest]]:
        """Future requests grouped per dose, in dose order.

        Anything whose fire time is not after `now` is left out.
        """
        name = display_name(title)
        start = start_date or now.date()
        times = [parse_clock_time(t) for t in clock_times]

        doses = []
        for day_offset in range(days):
            day = start + timedelta(days=day_offset)
            for slot, clock in enumerate(times):
                doses.append((combine(day, clock), day_offset, slot))
        doses.sort()

        groups = []
        for dose_time, day_offset, slot in doses:
            dose_identifier = identifiers.dose_id(medication_id, day_offset, slot)
            group = []
            if dose_time > now:
                group.append(ScheduledAlertRequest(
                    identifier=dose_identifier,
                    fire_at=dose_time,
                    payload=escalation.base_content(
                        medication_id, name, body, dose_time, stock,
                        is_critical, dose_identifier,
                    ),
                ))
            if is_critical:
                for step in escalation.LADDER:
                    fire_at = dose_time + step.after
                    if fire_at <= now:
                        continue
                    group.append(ScheduledAlertRequest(
                        identifier=identifiers.follow_up_id(dose_identifier, step.level),
                        fire_at=fire_at,
                        payload=escalation.follow_up_content(
                            step.level, medication_id, name, body,
                            dose_time, dose_identifier,
                        ),
                    ))
            if group:
                groups.append(group)
        return groups

    def _apply_capacity(self, medication_id: str,
                        groups: List[List[ScheduledAlertRequest]]) -> List[ScheduledAlertRequest]:
        """Keep whole dose groups, earliest first, up to the capacity."""
        kept: List[ScheduledAlertRequest] = []
        total = sum(len(g) for g in groups)
        for group in groups:
            if len(kept) + len(group) > self.capacity:
                break
            kept.extend(group)

        dropped = total - len(kept)
        if dropped:
            warning = CapacityExceeded(
                f"Reached notification limit for {medication_id}",
                dropped=dropped,
            )
            self.logger.warning(f"{warning} ({warning.to_dict()})")
        return kept

    def _submit_batch(self, medication_id: str,
                      requests: List[ScheduledAlertRequest],
                      generation: int) -> List[str]:
        submitted: List[str] = []
        for request in requests:
            if self.cancellation.generation(medication_id) != generation:
                self.logger.info(
                    f"Scheduling for {medication_id} superseded by a cancel, stopping"
                )
                break
            try:
                self.delivery.submit(request)
                submitted.append(request.identifier)
            except DeliveryRejected as e:
                self.logger.error(
                    f"Error scheduling notification {request.identifier}: {e} "
                    f"({e.reason})"
                )
            except Exception as e:
                self.logger.error(
                    f"Error scheduling notification {request.identifier}: {e}"
                )

        if self.cancellation.generation(medication_id) != generation and submitted:
            self.delivery.cancel(submitted)
            self.logger.info(
                f"Withdrew {len(submitted)} notification(s) for cancelled {medication_id}"
            )
            return []
        return submitted

    # ------------------------------------------------------------------
    # One-off requests
    # ------------------------------------------------------------------

    def submit_once(self, request: ScheduledAlertRequest) -> bool:
        """Submit unless the same identifier is already pending or delivered."""
        if self.delivery.already_sent(request.identifier):
            return False
        try:
            self.delivery.submit(request)
            return True
        except DeliveryRejected as e:
            self.logger.error(f"Error scheduling {request.identifier}: {e} ({e.reason})")
        except Exception as e:
            self.logger.error(f"Error scheduling {request.identifier}: {e}")
        return False

    def schedule_nudge(self, dose: DoseInstance, medication: Medication,
                       now: Optional[datetime] = None) -> bool:
        """The single "you haven't taken this yet" follow-up for a dose."""
        now = now or self.clock()
        return self.submit_once(ScheduledAlertRequest(
            identifier=identifiers.nudge_id(dose.id),
            fire_at=now + self.nudge_delay,
            payload=escalation.nudge_content(
                medication.id, medication.name, medication.food_timing,
                dose.scheduled_at, dose.id,
            ),
        ))

    def schedule_snooze(self, dose: DoseInstance, medication: Medication,
                        minutes: int, now: Optional[datetime] = None) -> bool:
        """Re-remind about a dose after `minutes`; replaces an earlier snooze."""
        now = now or self.clock()
        identifier = identifiers.snooze_id(dose.id)
        self.delivery.cancel([identifier])
        try:
            self.delivery.submit(ScheduledAlertRequest(
                identifier=identifier,
                fire_at=now + timedelta(minutes=minutes),
                payload=escalation.snooze_content(
                    medication.id, medication.name, medication.food_timing, dose.id,
                ),
            ))
        except DeliveryRejected as e:
            self.logger.error(f"Error scheduling snooze for {dose.id}: {e} ({e.reason})")
            return False
        self.logger.info(f"Dose {dose.id} snoozed for {minutes} minutes")
        return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def badge_count(self) -> int:
        return len(self.delivery.list_pending())

    def perform_maintenance(self, now: Optional[datetime] = None) -> dict:
        """Clear delivered alerts and withdraw pending ones already expired."""
        now = now or self.clock()
        removed = self.delivery.remove_delivered()
        expired = [r.identifier for r in self.delivery.list_pending() if r.fire_at < now]
        if expired:
            self.delivery.cancel(expired)
            self.logger.info(f"Cleaned up {len(expired)} expired notifications")
        return {"removed_delivered": removed, "expired": len(expired),
                "badge": self.badge_count()}
