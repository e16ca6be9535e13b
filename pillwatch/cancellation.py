"""
Cancellation / Deduplication Manager

Withdraws pending alerts and reconciliation timers by identifier prefix,
and owns the in-memory escalation chains (at most one active chain per
dose). It also keeps a per-medication generation counter: cancelling a
medication bumps it, and any scheduling batch that started under an older
generation stops before its next side effect.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pillwatch import identifiers
from pillwatch.delivery import DeliveryMechanism
from pillwatch.logger import get_logger
from pillwatch.timer_wheel import TimerWheel


class ChainState(Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


@dataclass
class EscalationChain:
    """Reconciliation state for one critical dose."""

    dose_id: str
    medication_id: str
    scheduled_at: datetime
    state: ChainState = ChainState.IDLE
    level: int = 0
    started_at: Optional[datetime] = None
    resolved_reason: str = ""

    @property
    def is_active(self) -> bool:
        return self.state != ChainState.RESOLVED


class CancellationManager:
    """Prefix cancellation across delivery, timers and chains."""

    def __init__(self, config, delivery: DeliveryMechanism, wheel: TimerWheel):
        self.config = config
        self.delivery = delivery
        self.wheel = wheel
        self.logger = get_logger(__name__, config)

        self._lock = threading.RLock()
        self._chains: Dict[str, EscalationChain] = {}
        self._generations: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------

    def generation(self, medication_id: str) -> int:
        with self._lock:
            return self._generations.setdefault(medication_id, 0)

    def bump_generation(self, medication_id: str) -> int:
        with self._lock:
            value = self._generations.get(medication_id, 0) + 1
            self._generations[medication_id] = value
            return value

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def register_chain(self, chain: EscalationChain) -> EscalationChain:
        """Store chain unless the dose already has an active one.

        Returns whichever chain owns the dose afterwards.
        """
        with self._lock:
            existing = self._chains.get(chain.dose_id)
            if existing is not None and existing.is_active:
                return existing
            self._chains[chain.dose_id] = chain
            return chain

    def get_chain(self, dose_id: str) -> Optional[EscalationChain]:
        with self._lock:
            return self._chains.get(dose_id)

    def active_chains(self, prefix: str = "") -> List[EscalationChain]:
        with self._lock:
            return [c for c in self._chains.values()
                    if c.is_active and c.dose_id.startswith(prefix)]

    def begin_monitoring(self, chain: EscalationChain, now: datetime) -> bool:
        """idle -> monitoring, only if chain still owns its dose."""
        with self._lock:
            if self._chains.get(chain.dose_id) is not chain:
                return False
            if chain.state != ChainState.IDLE:
                return False
            chain.state = ChainState.MONITORING
            chain.started_at = now
            return True

    def is_active_owner(self, chain: EscalationChain) -> bool:
        """True while `chain` is still the live chain for its dose."""
        with self._lock:
            return chain.is_active and self._chains.get(chain.dose_id) is chain

    def resolve_chain(self, dose_id: str, reason: str) -> Optional[EscalationChain]:
        """Mark the dose's chain resolved and drop its timers."""
        with self._lock:
            chain = self._chains.pop(dose_id, None)
            if chain is not None and chain.is_active:
                chain.state = ChainState.RESOLVED
                chain.resolved_reason = reason
        self.wheel.cancel_prefix(identifiers.dose_scope(dose_id))
        return chain

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_all(self, prefix: str, bump: bool = True) -> int:
        """Cancel every pending alert, timer and chain under `prefix`.

        Idempotent; returns the number of pending alerts withdrawn. When
        `bump` is set, every known medication whose whole scope falls
        under the prefix gets a new generation first.
        """
        if bump:
            with self._lock:
                for medication_id in list(self._generations):
                    if identifiers.medication_scope(medication_id).startswith(prefix):
                        self._generations[medication_id] += 1

        withdrawn = 0
        try:
            ids = self.delivery.pending_ids(prefix)
            if ids:
                withdrawn = self.delivery.cancel(ids)
        except Exception as e:
            self.logger.error(f"Failed to withdraw pending alerts for {prefix}: {e}")

        timers = self.wheel.cancel_prefix(prefix)

        with self._lock:
            doomed = [dose_id for dose_id in self._chains
                      if identifiers.dose_scope(dose_id).startswith(prefix)]
        for dose_id in doomed:
            self.resolve_chain(dose_id, "cancelled")

        if withdrawn or timers or doomed:
            self.logger.info(
                f"Cancelled {withdrawn} alert(s), {timers} timer(s), "
                f"{len(doomed)} chain(s) under {prefix}"
            )
        return withdrawn

    def cancel_medication(self, medication_id: str, bump: bool = True) -> int:
        return self.cancel_all(identifiers.medication_scope(medication_id), bump=bump)

    def withdraw_scheduled(self, medication_id: str) -> int:
        """Withdraw the medication's pending base reminders and follow-ups.

        Timers, chains, nudges, snoozes and reconciliation reminders stay,
        so a rebuild of the alert batch leaves monitoring running.
        """
        scope = identifiers.medication_scope(medication_id)
        ids = [i for i in self.delivery.pending_ids(scope)
               if identifiers.is_scheduled_alert(i)]
        if not ids:
            return 0
        withdrawn = self.delivery.cancel(ids)
        self.logger.info(f"Withdrew {withdrawn} scheduled alert(s) under {scope}")
        return withdrawn

    def cancel_for_dose(self, dose_id: str) -> int:
        """Cancel follow-ups, timers and the chain of a single dose.

        The dose's own base reminder is not under its scope and survives.
        """
        return self.cancel_all(identifiers.dose_scope(dose_id), bump=False)
