"""Tests for pillwatch.reminder_scheduler.ReminderScheduler."""
from datetime import datetime, timedelta

import pytest

from pillwatch import identifiers
from pillwatch.cancellation import CancellationManager
from pillwatch.delivery import LocalDelivery
from pillwatch.reminder_scheduler import ReminderScheduler, display_name
from pillwatch.schedule import DoseScheduleGenerator
from pillwatch.timer_wheel import TimerWheel

from conftest import make_medication


TEN_A_DAY = tuple(f"{h:02d}:00" for h in range(8, 18))


@pytest.fixture
def wheel(config):
    return TimerWheel(config)


@pytest.fixture
def cancellation(config, delivery, wheel):
    return CancellationManager(config, delivery, wheel)


@pytest.fixture
def scheduler(config, delivery, cancellation, clock):
    return ReminderScheduler(config, delivery, cancellation, clock=clock)


def test_display_name():
    assert display_name("Take Aspirin") == "Aspirin"
    assert display_name("Aspirin") == "Aspirin"


# ---------------------------------------------------------------------------
# Building and submitting
# ---------------------------------------------------------------------------

class TestSchedule:

    def test_regular_medication_gets_base_reminders_only(self, scheduler, delivery):
        med = make_medication(times=("08:00", "20:00"), days=2)
        assert scheduler.schedule_medication(med) == 4
        ids = [r.identifier for r in delivery.list_pending()]
        assert ids == [f"{med.id}/d0/t0", f"{med.id}/d0/t1", f"{med.id}/d1/t0", f"{med.id}/d1/t1"]
        assert delivery.list_pending()[0].payload.title == "Time for Aspirin"

    def test_critical_medication_gets_ladder(self, scheduler, delivery):
        med = make_medication(times=("08:00",), days=1, critical=True)
        assert scheduler.schedule_medication(med) == 5
        pending = {r.identifier: r.fire_at for r in delivery.list_pending()}
        dose = f"{med.id}/d0/t0"
        assert pending[identifiers.follow_up_id(dose, 1)] == datetime(2026, 3, 2, 8, 30)
        assert pending[identifiers.follow_up_id(dose, 4)] == datetime(2026, 3, 2, 12, 0)

    def test_past_requests_skipped(self, scheduler, delivery, clock):
        clock.set(8, 45)
        med = make_medication(times=("08:00",), days=1, critical=True)
        assert scheduler.schedule_medication(med) == 3
        dose = f"{med.id}/d0/t0"
        assert not delivery.has_pending(dose)
        assert not delivery.has_pending(identifiers.follow_up_id(dose, 1))
        assert delivery.has_pending(identifiers.follow_up_id(dose, 2))

    def test_rescheduling_replaces_previous_generation(self, scheduler, delivery):
        med = make_medication(times=("08:00", "20:00"), days=2)
        scheduler.schedule_medication(med)
        med.times = med.times[:1]
        assert scheduler.schedule_medication(med) == 2
        assert len(delivery.list_pending()) == 2

    def test_low_stock_subtitle(self, scheduler, delivery):
        med = make_medication(stock=3)
        scheduler.schedule_medication(med)
        assert delivery.list_pending()[0].payload.subtitle == "Only 3 pills remaining"


class TestCapacity:

    def test_ten_a_day_for_a_year_truncates_to_64(self, scheduler, delivery):
        med = make_medication(times=TEN_A_DAY, days=365)
        assert scheduler.schedule_medication(med) == 64
        pending = delivery.list_pending()
        assert len(pending) == 64
        assert pending[0].identifier == f"{med.id}/d0/t0"
        assert pending[-1].identifier == f"{med.id}/d6/t3"
        assert pending[-1].fire_at == datetime(2026, 3, 8, 11, 0)

    def test_critical_truncates_at_dose_granularity(self, scheduler, delivery):
        med = make_medication(times=TEN_A_DAY, days=365, critical=True)
        assert scheduler.schedule_medication(med) == 60
        dose_ids = {identifiers.owning_dose_id(r.identifier) for r in delivery.list_pending()}
        assert len(dose_ids) == 12
        for dose in dose_ids:
            assert len(delivery.pending_ids(dose)) == 5


class TestFailures:

    def test_permission_denied_is_not_fatal(self, scheduler, delivery):
        delivery.permission_granted = False
        assert scheduler.schedule_medication(make_medication(days=3)) == 0

    def test_rejections_handled_per_request(self, config, cancellation, clock):
        small = LocalDelivery(config, capacity=3)
        cancellation.delivery = small
        scheduler = ReminderScheduler(config, small, cancellation, clock=clock)
        assert scheduler.schedule_medication(make_medication(days=5)) == 3

    def test_concurrent_call_dropped(self, scheduler, delivery):
        med = make_medication(days=2)
        assert scheduler.queue.claim(med.id)
        assert scheduler.schedule_medication(med) == 0
        assert delivery.list_pending() == []
        scheduler.queue.release(med.id)
        assert scheduler.schedule_medication(med) == 2

    def test_cancel_during_batch_withdraws_everything(self, config, wheel, clock):
        class CancellingDelivery(LocalDelivery):
            def submit(self, request):
                super().submit(request)
                if not getattr(self, "fired", False):
                    self.fired = True
                    manager.cancel_medication(med.id)

        delivery = CancellingDelivery(config)
        manager = CancellationManager(config, delivery, wheel)
        scheduler = ReminderScheduler(config, delivery, manager, clock=clock)
        med = make_medication(days=3)

        assert scheduler.schedule_medication(med) == 0
        assert delivery.list_pending() == []

    def test_cancel_after_pre_cancel_voids_batch(self, scheduler, delivery, cancellation):
        med = make_medication(days=3)
        withdraw = scheduler._cancel_existing

        def withdraw_then_user_cancels(medication_id):
            withdraw(medication_id)
            cancellation.cancel_medication(medication_id)

        scheduler._cancel_existing = withdraw_then_user_cancels
        assert scheduler.schedule_medication(med) == 0
        assert delivery.list_pending() == []

    def test_queued_job_with_stale_generation_does_nothing(self, scheduler, delivery,
                                                           cancellation):
        med = make_medication(days=3)
        args = scheduler.schedule_args(med)
        args["generation"] = cancellation.generation(med.id)
        cancellation.cancel_medication(med.id)
        assert scheduler.run_schedule(**args) == 0
        assert delivery.list_pending() == []


# ---------------------------------------------------------------------------
# One-off requests and housekeeping
# ---------------------------------------------------------------------------

class TestOneOff:

    def _dose(self, store, med, clock):
        store.save_medication(med)
        return DoseScheduleGenerator(store.config).regenerate(store, med, clock())[0]

    def test_nudge_once(self, scheduler, delivery, store, clock):
        med = make_medication(times=("06:00",))
        dose = self._dose(store, med, clock)
        assert scheduler.schedule_nudge(dose, med)
        assert not scheduler.schedule_nudge(dose, med)
        request = delivery.list_pending()[0]
        assert request.identifier == identifiers.nudge_id(dose.id)
        assert request.fire_at == clock() + timedelta(minutes=5)

    def test_reschedule_keeps_nudge_and_timers(self, scheduler, delivery, wheel, store, clock):
        med = make_medication(times=("06:00", "20:00"))
        dose = self._dose(store, med, clock)
        scheduler.schedule_medication(med)
        scheduler.schedule_nudge(dose, med)
        wheel.schedule(identifiers.timer_key(dose.id, identifiers.TICK), clock(), lambda: None)

        assert scheduler.schedule_medication(med) == 1
        assert sorted(delivery.pending_ids()) == sorted(
            [f"{med.id}/d0/t1", identifiers.nudge_id(dose.id)]
        )
        assert wheel.keys() == [identifiers.timer_key(dose.id, identifiers.TICK)]

    def test_snooze_replaces(self, scheduler, delivery, store, clock):
        med = make_medication(times=("06:00",))
        dose = self._dose(store, med, clock)
        scheduler.schedule_snooze(dose, med, 10)
        scheduler.schedule_snooze(dose, med, 20)
        pending = delivery.list_pending()
        assert len(pending) == 1
        assert pending[0].fire_at == clock() + timedelta(minutes=20)

    def test_maintenance(self, scheduler, delivery, clock):
        med = make_medication(times=("08:00", "08:30"))
        scheduler.schedule_medication(med)
        delivery.deliver_due(datetime(2026, 3, 2, 8, 10))
        clock.set(9, 0)
        result = scheduler.perform_maintenance()
        assert result == {"removed_delivered": 1, "expired": 1, "badge": 0}
        assert delivery.list_delivered() == []
