"""Tests for pillwatch.timewindow."""
from datetime import datetime, time, timedelta

import pytest

from pillwatch.errors import ConfigurationError
from pillwatch.models import DoseInstance
from pillwatch.timewindow import (
    DoseTimeStatus,
    combine,
    dose_time_status,
    is_due,
    is_eligible,
    is_missed,
    is_within_window,
    needs_follow_up,
    parse_clock_time,
    start_of_day,
    window_opens_at,
)


T = datetime(2026, 3, 2, 8, 0)


def dose(**kwargs):
    return DoseInstance(id="m/d0/t0", medication_id="m", scheduled_at=T,
                        day_offset=0, slot=0, **kwargs)


class TestWindows:

    def test_within_window_is_strict(self):
        assert is_within_window(T, T + timedelta(hours=1, minutes=59))
        assert not is_within_window(T, T + timedelta(hours=2))
        assert not is_within_window(T, T - timedelta(hours=2))

    def test_is_due(self):
        assert not is_due(T, T - timedelta(minutes=1))
        assert is_due(T, T)
        assert is_due(T, T + timedelta(hours=2))
        assert not is_due(T, T + timedelta(hours=2, minutes=1))

    def test_window_opens(self):
        assert window_opens_at(T) == datetime(2026, 3, 2, 6, 0)

    def test_eligible_only_when_open(self):
        assert is_eligible(dose(), T + timedelta(minutes=10))
        assert not is_eligible(dose(is_taken=True), T + timedelta(minutes=10))
        assert not is_eligible(dose(), T + timedelta(hours=3))

    def test_missed(self):
        assert is_missed(dose(), T + timedelta(hours=3))
        assert not is_missed(dose(is_skipped=True), T + timedelta(hours=3))

    def test_needs_follow_up(self):
        assert not needs_follow_up(dose(), T + timedelta(minutes=30))
        assert needs_follow_up(dose(), T + timedelta(minutes=31))
        assert not needs_follow_up(dose(), T + timedelta(hours=2))
        assert not needs_follow_up(dose(is_taken=True), T + timedelta(minutes=45))

    def test_status(self):
        assert dose_time_status(dose(), T - timedelta(hours=3)) == DoseTimeStatus.UPCOMING
        assert dose_time_status(dose(), T + timedelta(minutes=5)) == DoseTimeStatus.CURRENT
        assert dose_time_status(dose(), T + timedelta(hours=3)) == DoseTimeStatus.MISSED
        assert dose_time_status(dose(is_taken=True), T) == DoseTimeStatus.TAKEN
        assert dose_time_status(dose(is_skipped=True), T) == DoseTimeStatus.SKIPPED

    def test_day_helpers(self):
        assert start_of_day(T) == datetime(2026, 3, 2)
        assert combine(T.date(), time(21, 15)) == datetime(2026, 3, 2, 21, 15)


class TestParseClockTime:

    @pytest.mark.parametrize("text,expected", [
        ("08:00", time(8, 0)),
        ("8", time(8, 0)),
        ("8 PM", time(20, 0)),
        ("8:30am", time(8, 30)),
        ("12 am", time(0, 0)),
        ("12pm", time(12, 0)),
        ("noon", time(12, 0)),
        ("midnight", time(0, 0)),
        ("21.45", time(21, 45)),
    ])
    def test_formats(self, text, expected):
        assert parse_clock_time(text) == expected

    def test_time_and_datetime_drop_seconds(self):
        assert parse_clock_time(time(7, 15, 30)) == time(7, 15)
        assert parse_clock_time(datetime(2026, 1, 1, 9, 5, 59)) == time(9, 5)

    def test_dateutil_fallback(self):
        assert parse_clock_time("9:15:00 PM") == time(21, 15)

    @pytest.mark.parametrize("bad", ["", "   ", "25:00", "13 pm", "soonish", None])
    def test_invalid(self, bad):
        with pytest.raises(ConfigurationError):
            parse_clock_time(bad)
