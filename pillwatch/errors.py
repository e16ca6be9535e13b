"""
Error hierarchy for pillwatch.

Hierarchy:
    PillwatchError                  (base)
    ├── ConfigurationError          (invalid schedule input, bad config file)
    ├── CapacityExceeded            (alert count over the delivery ceiling)
    ├── DeliveryRejected            (delivery mechanism refused one request)
    ├── StoreConflict               (save failed, transaction rolled back)
    ├── StaleMonitoring             (monitored dose already resolved elsewhere)
    └── DoseNotEligible             (take attempted outside the window)

Only StoreConflict and DoseNotEligible carry a user_message; everything
else is logged and handled internally.
"""

from typing import Optional


class PillwatchError(Exception):
    """Base exception for all pillwatch errors."""

    user_message: Optional[str] = None

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)
        if cause and not self.__cause__:
            self.__cause__ = cause

    def to_dict(self) -> dict:
        """Structured representation for logging."""
        d = {
            "error_type": type(self).__name__,
            "message": str(self),
        }
        if self.cause:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d


class ConfigurationError(PillwatchError):
    """Invalid schedule input or configuration file."""
    pass


class CapacityExceeded(PillwatchError):
    """Would-be alert count exceeds the delivery ceiling. Never fatal."""

    def __init__(self, message: str = "Alert capacity exceeded", *,
                 dropped: int = 0, **kwargs):
        self.dropped = dropped
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["dropped"] = self.dropped
        return d


class DeliveryRejected(PillwatchError):
    """The delivery mechanism refused a specific request."""

    PERMISSION_DENIED = "permission_denied"
    CAPACITY = "capacity"
    TRANSIENT = "transient"

    def __init__(self, message: str = "Delivery rejected", *,
                 identifier: str = "", reason: str = TRANSIENT, **kwargs):
        self.identifier = identifier
        self.reason = reason
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["identifier"] = self.identifier
        d["reason"] = self.reason
        return d


class StoreConflict(PillwatchError):
    """A store write failed and was rolled back."""

    user_message = "Could not save. Please try again."


class StaleMonitoring(PillwatchError):
    """A reconciliation tick found its dose already resolved."""
    pass


class DoseNotEligible(PillwatchError):
    """A dose was marked taken outside its eligibility window."""

    user_message = "This dose can only be taken within 2 hours of its scheduled time."


def delivery_error_message(error: Exception) -> str:
    """User-facing text for a delivery failure."""
    if isinstance(error, DeliveryRejected):
        if error.reason == DeliveryRejected.PERMISSION_DENIED:
            return "Notification permissions not granted"
        if error.reason == DeliveryRejected.CAPACITY:
            return "Too many notifications scheduled"
        return "Failed to schedule reminder"
    return str(error)
