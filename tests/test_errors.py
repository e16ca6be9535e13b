"""Tests for pillwatch.errors."""
from pillwatch.errors import (
    CapacityExceeded,
    ConfigurationError,
    DeliveryRejected,
    DoseNotEligible,
    PillwatchError,
    StaleMonitoring,
    StoreConflict,
    delivery_error_message,
)


class TestHierarchy:

    def test_all_subclass_base(self):
        for cls in (ConfigurationError, CapacityExceeded, DeliveryRejected,
                    StoreConflict, StaleMonitoring, DoseNotEligible):
            assert issubclass(cls, PillwatchError)

    def test_only_user_facing_errors_have_messages(self):
        assert StoreConflict("x").user_message == "Could not save. Please try again."
        assert DoseNotEligible("x").user_message
        assert ConfigurationError("x").user_message is None
        assert StaleMonitoring("x").user_message is None

    def test_cause_chained(self):
        cause = ValueError("bad")
        err = StoreConflict("could not save", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict() == {
            "error_type": "StoreConflict",
            "message": "could not save",
            "cause": "ValueError: bad",
        }

    def test_capacity_to_dict(self):
        d = CapacityExceeded("over", dropped=12).to_dict()
        assert d["dropped"] == 12
        assert "cause" not in d

    def test_delivery_rejected_to_dict(self):
        err = DeliveryRejected("no", identifier="m/d0/t0", reason=DeliveryRejected.CAPACITY)
        assert err.to_dict()["identifier"] == "m/d0/t0"
        assert err.to_dict()["reason"] == "capacity"


class TestDeliveryErrorMessage:

    def test_permission(self):
        err = DeliveryRejected(reason=DeliveryRejected.PERMISSION_DENIED)
        assert delivery_error_message(err) == "Notification permissions not granted"

    def test_capacity(self):
        err = DeliveryRejected(reason=DeliveryRejected.CAPACITY)
        assert delivery_error_message(err) == "Too many notifications scheduled"

    def test_transient(self):
        assert delivery_error_message(DeliveryRejected()) == "Failed to schedule reminder"

    def test_other(self):
        assert delivery_error_message(RuntimeError("boom")) == "boom"
