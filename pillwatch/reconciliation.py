"""
Reconciliation Loop

Watches open critical doses until they are taken, skipped, missed or the
8 hour ceiling runs out. Each dose moves through idle -> monitoring ->
resolved; the chain itself lives in the CancellationManager so any path
(user action, medication edit, ceiling) can end it.

Every check re-reads the dose from the store. A chain never trusts the
DoseInstance it was started with for taken-state decisions.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from pillwatch import escalation, identifiers
from pillwatch.cancellation import CancellationManager, ChainState, EscalationChain
from pillwatch.delivery import DeliveryMechanism
from pillwatch.errors import DeliveryRejected, StaleMonitoring, StoreConflict
from pillwatch.logger import get_logger
from pillwatch.models import DoseInstance, Medication, ScheduledAlertRequest
from pillwatch.timer_wheel import TimerWheel
from pillwatch.timewindow import is_within_window


class ReconciliationLoop:
    """Per-dose monitoring chains driven by the shared timer wheel."""

    def __init__(self, config, store, delivery: DeliveryMechanism,
                 wheel: TimerWheel, cancellation: CancellationManager,
                 clock: Callable[[], datetime] = datetime.now,
                 scheduler=None, on_missed: Optional[Callable[[str], None]] = None):
        self.config = config
        self.store = store
        self.delivery = delivery
        self.wheel = wheel
        self.cancellation = cancellation
        self.clock = clock
        self.scheduler = scheduler
        self.on_missed = on_missed
        self.logger = get_logger(__name__, config)

        self.tick_interval = timedelta(minutes=config.get("reconciliation.tick_minutes", 30))
        self.missed_after = timedelta(
            minutes=config.get("reconciliation.missed_after_minutes", 120)
        )
        self.window = timedelta(minutes=config.get("reconciliation.window_minutes", 120))
        self.ceiling = timedelta(hours=config.get("reconciliation.ceiling_hours", 8))

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start_monitoring(self, dose: DoseInstance, medication: Medication,
                         now: Optional[datetime] = None) -> Optional[EscalationChain]:
        """Begin (or arm) monitoring for one critical dose.

        Returns the chain that owns the dose afterwards, or None when the
        dose doesn't qualify (regular medication, already resolved).
        """
        if not medication.is_critical or not dose.is_open or dose.missed_at:
            return None
        now = now or self.clock()

        existing = self.cancellation.get_chain(dose.id)
        if existing is not None and existing.state == ChainState.MONITORING:
            return existing

        opens_at = dose.scheduled_at - self.window
        if now < opens_at:
            if existing is not None:
                return existing
            return self._arm_idle(dose, opens_at)

        chain = existing
        if chain is None:
            chain = self.cancellation.register_chain(EscalationChain(
                dose_id=dose.id,
                medication_id=dose.medication_id,
                scheduled_at=dose.scheduled_at,
            ))
        if not self.cancellation.begin_monitoring(chain, now):
            # Someone else moved the chain on (or replaced it) first
            return self.cancellation.get_chain(dose.id)

        self.wheel.cancel(identifiers.timer_key(dose.id, identifiers.WINDOW_OPEN))
        self.wheel.schedule(
            identifiers.timer_key(dose.id, identifiers.TICK),
            now + self.tick_interval,
            lambda: self.tick(dose.id),
            interval=self.tick_interval,
        )
        self.wheel.schedule(
            identifiers.timer_key(dose.id, identifiers.CEILING),
            now + self.ceiling,
            lambda: self._ceiling_reached(dose.id),
        )
        # Deadline check independent of the tick phase
        self.wheel.schedule(
            identifiers.timer_key(dose.id, identifiers.MISSED),
            dose.scheduled_at + self.missed_after,
            lambda: self.tick(dose.id),
        )
        self.logger.info(
            f"Monitoring critical dose {dose.id} ({medication.name} at "
            f"{dose.scheduled_at:%H:%M})"
        )

        self._check(chain, now)
        return self.cancellation.get_chain(dose.id) or chain

    def _arm_idle(self, dose: DoseInstance, opens_at: datetime) -> EscalationChain:
        chain = self.cancellation.register_chain(EscalationChain(
            dose_id=dose.id,
            medication_id=dose.medication_id,
            scheduled_at=dose.scheduled_at,
        ))
        self.wheel.schedule(
            identifiers.timer_key(dose.id, identifiers.WINDOW_OPEN),
            opens_at,
            lambda: self._window_opened(dose.id),
        )
        self.logger.debug(f"Dose {dose.id} idle until {opens_at:%Y-%m-%d %H:%M}")
        return chain

    def stop_monitoring(self, dose_id: str, reason: str = "stopped") -> bool:
        """End the dose's chain and its timers. Pending alerts are kept."""
        chain = self.cancellation.resolve_chain(dose_id, reason)
        if chain is None:
            return False
        self.logger.info(f"Stopped monitoring {dose_id} ({reason})")
        return True

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    def tick(self, dose_id: str):
        chain = self.cancellation.get_chain(dose_id)
        if chain is None or chain.state != ChainState.MONITORING:
            return
        self._check(chain, self.clock())

    def _window_opened(self, dose_id: str):
        chain = self.cancellation.get_chain(dose_id)
        if chain is None or chain.state != ChainState.IDLE:
            return
        dose = self.store.get_dose(dose_id)
        medication = self.store.get_medication(chain.medication_id)
        if dose is None or medication is None:
            self.cancellation.resolve_chain(dose_id, "gone")
            return
        self.start_monitoring(dose, medication)

    def _ceiling_reached(self, dose_id: str):
        chain = self.cancellation.get_chain(dose_id)
        if chain is None or not chain.is_active:
            return
        self.logger.info(f"Monitoring ceiling reached for {dose_id}")
        self.cancellation.resolve_chain(dose_id, "ceiling")

    # ------------------------------------------------------------------
    # Reconciliation check
    # ------------------------------------------------------------------

    def _fetch_open_dose(self, chain: EscalationChain) -> DoseInstance:
        dose = self.store.get_dose(chain.dose_id)
        if dose is None:
            raise StaleMonitoring(f"Dose {chain.dose_id} no longer exists")
        if dose.is_taken:
            raise StaleMonitoring(f"Dose {chain.dose_id} was taken")
        if dose.is_skipped:
            raise StaleMonitoring(f"Dose {chain.dose_id} was skipped")
        return dose

    def _check(self, chain: EscalationChain, now: datetime):
        try:
            dose = self._fetch_open_dose(chain)
        except StaleMonitoring as e:
            self.logger.info(f"{e}, ending monitoring")
            if self.cancellation.is_active_owner(chain):
                self.cancellation.resolve_chain(chain.dose_id, "resolved")
                self.cancellation.cancel_for_dose(chain.dose_id)
            return

        elapsed = now - dose.scheduled_at
        if elapsed >= self.missed_after:
            self._resolve_missed(chain, dose, now)
            return

        level = escalation.escalation_level(elapsed)
        if level > escalation.NONE:
            self._send_persistent(chain, dose, level, now)

    def _send_persistent(self, chain: EscalationChain, dose: DoseInstance,
                         level: int, now: datetime) -> bool:
        """Submit {dose}/p{level} unless that level was already raised."""
        follow_up = identifiers.follow_up_id(dose.id, level)
        identifier = identifiers.persistent_id(dose.id, level)
        if self.delivery.already_sent(follow_up) or self.delivery.already_sent(identifier):
            chain.level = max(chain.level, level)
            return False

        medication = self.store.get_medication(dose.medication_id)
        if medication is None:
            return False
        request = ScheduledAlertRequest(
            identifier=identifier,
            fire_at=now,
            payload=escalation.persistent_content(
                level, medication.id, medication.name, medication.food_timing,
                dose.scheduled_at, dose.id,
            ),
        )

        if not self.cancellation.is_active_owner(chain):
            return False
        try:
            self.delivery.submit(request)
        except DeliveryRejected as e:
            self.logger.error(f"Error sending persistent reminder {identifier}: {e} ({e.reason})")
            return False
        if not self.cancellation.is_active_owner(chain):
            self.delivery.cancel([identifier])
            self.logger.info(f"Withdrew {identifier}, chain resolved during submit")
            return False

        chain.level = level
        self.logger.info(f"Sent level {level} reminder for critical dose {dose.id}")
        return True

    def _resolve_missed(self, chain: EscalationChain, dose: DoseInstance, now: datetime):
        if not self.cancellation.is_active_owner(chain):
            return
        self.cancellation.resolve_chain(dose.id, "missed")
        try:
            self.store.mark_missed(dose.id, now)
        except StoreConflict as e:
            self.logger.error(f"Could not record missed dose {dose.id}: {e}")
        self.cancellation.cancel_for_dose(dose.id)
        self.logger.warning(
            f"Critical dose missed: {dose.medication_id} scheduled "
            f"{dose.scheduled_at:%Y-%m-%d %H:%M}, not taken by {now:%H:%M}"
        )
        if self.on_missed:
            self.on_missed(dose.id)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def arm_medication(self, medication: Medication,
                       now: Optional[datetime] = None) -> int:
        """Monitor today's open doses of a critical medication.

        Doses inside their window start monitoring, later ones get an idle
        chain. Returns how many are being monitored.
        """
        if not medication.is_critical:
            return 0
        now = now or self.clock()
        monitoring = 0
        for dose in self.store.doses_for_day(medication.id, now.date()):
            if not dose.is_open or dose.missed_at:
                continue
            if is_within_window(dose.scheduled_at, now, self.window):
                chain = self.start_monitoring(dose, medication, now)
                if chain is not None and chain.state == ChainState.MONITORING:
                    monitoring += 1
            elif dose.scheduled_at > now:
                self.start_monitoring(dose, medication, now)
        return monitoring

    def run_startup_sweep(self, now: Optional[datetime] = None) -> int:
        """Rebuild in-memory state after a restart.

        Returns the number of doses put into monitoring.
        """
        now = now or self.clock()
        monitoring = 0
        rearmed = 0
        for medication in self.store.list_medications():
            try:
                if self.scheduler is not None and self._needs_rearm(medication, now):
                    self.scheduler.schedule_medication(medication)
                    rearmed += 1
                monitoring += self.arm_medication(medication, now)
            except StoreConflict as e:
                self.logger.error(f"Startup sweep failed for {medication.id}: {e}")

        self.logger.info(
            f"Startup sweep: {monitoring} critical dose(s) monitoring, "
            f"{rearmed} medication(s) re-armed"
        )
        return monitoring

    def _needs_rearm(self, medication: Medication, now: datetime) -> bool:
        scope = identifiers.medication_scope(medication.id)
        if self.delivery.pending_ids(scope):
            return False
        # Critical doses still have ladder alerts due after their own time
        reach = escalation.LADDER[-1].after if medication.is_critical else timedelta(0)
        return any(d.is_open and not d.missed_at and d.scheduled_at + reach > now
                   for d in self.store.list_doses(medication.id))

