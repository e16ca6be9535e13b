"""
Alert delivery.

DeliveryMechanism is the seam to whatever actually shows alerts to the user.
LocalDelivery is the in-process implementation: a capacity-capped pending
set that releases requests when their fire time passes, optionally handing
each one to the desktop via notify-send.
"""

import subprocess
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pillwatch.errors import DeliveryRejected
from pillwatch.logger import get_logger
from pillwatch.models import InterruptionLevel, ScheduledAlertRequest


class DeliveryMechanism:
    """Interface of a capacity-bounded scheduled-alert service."""

    capacity: int = 64

    def submit(self, request: ScheduledAlertRequest) -> None:
        """Queue a request. Raises DeliveryRejected on refusal."""
        raise NotImplementedError

    def cancel(self, identifiers: Iterable[str]) -> int:
        """Withdraw pending requests; unknown ids are ignored."""
        raise NotImplementedError

    def list_pending(self) -> List[ScheduledAlertRequest]:
        raise NotImplementedError

    def list_delivered(self) -> List[ScheduledAlertRequest]:
        raise NotImplementedError

    def remove_delivered(self) -> int:
        raise NotImplementedError

    def deliver_due(self, now: datetime) -> List[ScheduledAlertRequest]:
        """Release every pending request whose fire time has passed."""
        return []

    # ------------------------------------------------------------------
    # Derived queries
    # ------------------------------------------------------------------

    def pending_ids(self, prefix: str = "") -> List[str]:
        return [r.identifier for r in self.list_pending()
                if r.identifier.startswith(prefix)]

    def has_pending(self, identifier: str) -> bool:
        return any(r.identifier == identifier for r in self.list_pending())

    def was_delivered(self, identifier: str) -> bool:
        return any(r.identifier == identifier for r in self.list_delivered())

    def already_sent(self, identifier: str) -> bool:
        """Pending or delivered; used to keep reminders idempotent."""
        return self.has_pending(identifier) or self.was_delivered(identifier)


class LocalDelivery(DeliveryMechanism):
    """In-process delivery with a global pending ceiling."""

    def __init__(self, config=None, capacity: Optional[int] = None):
        self.config = config
        self.logger = get_logger(__name__, config)
        if capacity is None:
            capacity = config.get("delivery.capacity", 64) if config else 64
        self.capacity = capacity
        self.desktop_notifications = (
            config.get("delivery.desktop_notifications", False) if config else False
        )
        self.permission_granted = True

        self._lock = threading.Lock()
        self._pending: Dict[str, ScheduledAlertRequest] = {}
        self._delivered: Dict[str, Tuple[ScheduledAlertRequest, datetime]] = {}
        self._listeners: List[Callable[[ScheduledAlertRequest], None]] = []

    def add_listener(self, callback: Callable[[ScheduledAlertRequest], None]):
        """Called with each request as it is delivered."""
        self._listeners.append(callback)

    def submit(self, request: ScheduledAlertRequest) -> None:
        if not self.permission_granted:
            raise DeliveryRejected(
                "Notification permission not granted",
                identifier=request.identifier,
                reason=DeliveryRejected.PERMISSION_DENIED,
            )
        with self._lock:
            # Same identifier replaces the earlier request in place
            if (request.identifier not in self._pending
                    and len(self._pending) >= self.capacity):
                raise DeliveryRejected(
                    f"Pending ceiling of {self.capacity} reached",
                    identifier=request.identifier,
                    reason=DeliveryRejected.CAPACITY,
                )
            self._pending[request.identifier] = request

    def cancel(self, identifiers: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for identifier in identifiers:
                if self._pending.pop(identifier, None) is not None:
                    removed += 1
        return removed

    def list_pending(self) -> List[ScheduledAlertRequest]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda r: r.fire_at)

    def list_delivered(self) -> List[ScheduledAlertRequest]:
        with self._lock:
            return [r for r, _ in self._delivered.values()]

    def remove_delivered(self) -> int:
        with self._lock:
            count = len(self._delivered)
            self._delivered.clear()
        return count

    def deliver_due(self, now: datetime) -> List[ScheduledAlertRequest]:
        with self._lock:
            due = sorted((r for r in self._pending.values() if r.fire_at <= now),
                         key=lambda r: r.fire_at)
            for request in due:
                del self._pending[request.identifier]
                self._delivered[request.identifier] = (request, now)

        for request in due:
            self.logger.info(f"Delivered {request.identifier}: '{request.payload.title}'")
            if self.desktop_notifications:
                self._send_desktop_notification(request)
            for listener in self._listeners:
                try:
                    listener(request)
                except Exception as e:
                    self.logger.error(f"Delivery listener failed for {request.identifier}: {e}")
        return due

    def _send_desktop_notification(self, request: ScheduledAlertRequest) -> bool:
        payload = request.payload
        if payload.interruption == InterruptionLevel.CRITICAL:
            urgency = "critical"
        elif payload.interruption == InterruptionLevel.PASSIVE:
            urgency = "low"
        else:
            urgency = "normal"
        body = payload.body
        if payload.subtitle:
            body = f"{payload.subtitle}\n{body}" if body else payload.subtitle
        try:
            cmd = ["notify-send", f"--urgency={urgency}", payload.title]
            if body:
                cmd.append(body)
            result = subprocess.run(cmd, capture_output=True, timeout=5)
            return result.returncode == 0
        except Exception as e:
            self.logger.warning(f"send_notification failed: {e}")
            return False
