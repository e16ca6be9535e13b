"""Shared pytest configuration and fixtures for the test suite."""
from datetime import date, datetime, time, timedelta

import pytest

from pillwatch.config import Config
from pillwatch.delivery import LocalDelivery
from pillwatch.models import Medication
from pillwatch.service import ReminderService
from pillwatch.store import SqliteDoseStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "scenario: end-to-end reminder scenario")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int = 0) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return self.now


TODAY = date(2026, 3, 2)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 7, 0))


@pytest.fixture
def config(tmp_path):
    return Config({
        "logging": {"console": False},
        "store": {"db_path": str(tmp_path / "pillwatch.db")},
        "scheduler": {"cancel_timeout_seconds": 1.0},
    })


@pytest.fixture
def store(config):
    return SqliteDoseStore(config)


@pytest.fixture
def delivery(config):
    return LocalDelivery(config)


@pytest.fixture
def service(config, store, delivery, clock):
    svc = ReminderService(config, store=store, delivery=delivery, clock=clock)
    yield svc
    svc.stop()


def make_medication(name="Aspirin", times=("08:00",), days=1, critical=False,
                    stock=30, start=TODAY, med_id=None, food_timing="") -> Medication:
    kwargs = {}
    if med_id is not None:
        kwargs["id"] = med_id
    return Medication(
        name=name,
        times=[time.fromisoformat(t) for t in times],
        days=days,
        start_date=start,
        food_timing=food_timing,
        stock=stock,
        is_critical=critical,
        **kwargs,
    )
