"""Tests for pillwatch.store.SqliteDoseStore."""
import sqlite3
from datetime import datetime, time

import pytest

from pillwatch.errors import StoreConflict
from pillwatch.models import DoseInstance
from pillwatch.store import SqliteDoseStore

from conftest import TODAY, make_medication


def dose_for(med, day=0, slot=0, hour=8):
    return DoseInstance(
        id=f"{med.id}/d{day}/t{slot}",
        medication_id=med.id,
        scheduled_at=datetime(2026, 3, 2 + day, hour, 0),
        day_offset=day,
        slot=slot,
    )


@pytest.fixture
def med(store):
    m = make_medication(name="Metformin", times=("08:00", "20:00"), days=3,
                        stock=2, critical=True, food_timing="With food")
    store.save_medication(m)
    return m


class TestMedications:

    def test_round_trip(self, store, med):
        loaded = store.get_medication(med.id)
        assert loaded.name == "Metformin"
        assert loaded.times == [time(8, 0), time(20, 0)]
        assert loaded.start_date == TODAY
        assert loaded.is_critical is True
        assert loaded.food_timing == "With food"

    def test_upsert(self, store, med):
        med.name = "Metformin XR"
        store.save_medication(med)
        assert store.get_medication(med.id).name == "Metformin XR"
        assert len(store.list_medications()) == 1

    def test_list_critical_only(self, store, med):
        store.save_medication(make_medication(name="Vitamin D"))
        assert [m.name for m in store.list_medications(critical_only=True)] == ["Metformin"]
        assert len(store.list_medications()) == 2

    def test_delete_cascades(self, store, med):
        store.replace_doses(med.id, [dose_for(med)])
        assert store.delete_medication(med.id)
        assert store.get_medication(med.id) is None
        assert store.get_dose(f"{med.id}/d0/t0") is None
        assert not store.delete_medication(med.id)

    def test_negative_stock_rejected(self, store, med):
        with pytest.raises(StoreConflict) as exc:
            store.set_stock(med.id, -1)
        assert exc.value.user_message == "Could not save. Please try again."
        assert store.get_medication(med.id).stock == 2


class TestDoses:

    def test_replace_is_atomic(self, store, med):
        store.replace_doses(med.id, [dose_for(med), dose_for(med, slot=1, hour=20)])
        duplicate = [dose_for(med, day=1), dose_for(med, day=1)]
        with pytest.raises(StoreConflict):
            store.replace_doses(med.id, duplicate)
        assert len(store.list_doses(med.id)) == 2

    def test_doses_for_day(self, store, med):
        store.replace_doses(med.id, [dose_for(med), dose_for(med, slot=1, hour=20),
                                     dose_for(med, day=1)])
        assert len(store.doses_for_day(med.id, TODAY)) == 2

    def test_mark_taken_decrements_stock(self, store, med):
        store.replace_doses(med.id, [dose_for(med)])
        changed, previous = store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        assert (changed, previous) == (True, 2)
        assert store.get_medication(med.id).stock == 1
        dose = store.get_dose(f"{med.id}/d0/t0")
        assert dose.is_taken and dose.taken_at == datetime(2026, 3, 2, 8, 5)

    def test_mark_taken_is_idempotent(self, store, med):
        store.replace_doses(med.id, [dose_for(med)])
        store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        assert store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 6)) == (False, None)
        assert store.get_medication(med.id).stock == 1

    def test_stock_never_negative(self, store, med):
        store.set_stock(med.id, 0)
        store.replace_doses(med.id, [dose_for(med)])
        store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        assert store.get_medication(med.id).stock == 0

    def test_mark_taken_missing_dose(self, store, med):
        with pytest.raises(StoreConflict):
            store.mark_taken(f"{med.id}/d9/t9", datetime(2026, 3, 2, 8, 5))

    def test_undo_restores_stock(self, store, med):
        store.replace_doses(med.id, [dose_for(med)])
        store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        assert store.get_dose(f"{med.id}/d0/t0").stock_decremented
        assert store.undo_taken(f"{med.id}/d0/t0")
        dose = store.get_dose(f"{med.id}/d0/t0")
        assert not dose.is_taken
        assert not dose.stock_decremented
        assert store.get_medication(med.id).stock == 2
        assert not store.undo_taken(f"{med.id}/d0/t0")

    def test_undo_survives_reopening_the_database(self, config, store, med):
        store.replace_doses(med.id, [dose_for(med)])
        store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        reopened = SqliteDoseStore(config)
        assert reopened.undo_taken(f"{med.id}/d0/t0")
        assert reopened.get_medication(med.id).stock == 2

    def test_undo_without_stock_leaves_stock_alone(self, store, med):
        store.set_stock(med.id, 0)
        store.replace_doses(med.id, [dose_for(med)])
        store.mark_taken(f"{med.id}/d0/t0", datetime(2026, 3, 2, 8, 5))
        assert store.undo_taken(f"{med.id}/d0/t0")
        assert store.get_medication(med.id).stock == 0

    def test_skip_and_missed(self, store, med):
        store.replace_doses(med.id, [dose_for(med), dose_for(med, slot=1, hour=20)])
        assert store.mark_skipped(f"{med.id}/d0/t0")
        assert not store.mark_skipped(f"{med.id}/d0/t0")
        assert store.mark_missed(f"{med.id}/d0/t1", datetime(2026, 3, 2, 22, 5))
        assert not store.mark_missed(f"{med.id}/d0/t1", datetime(2026, 3, 2, 23, 0))
        assert store.get_dose(f"{med.id}/d0/t1").missed_at == datetime(2026, 3, 2, 22, 5)


class TestSchema:

    def test_migrates_doses_table_without_stock_flag(self, config, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(str(path))
        conn.execute("""
            CREATE TABLE doses (
                id TEXT PRIMARY KEY, medication_id TEXT NOT NULL,
                scheduled_at TEXT NOT NULL, day_offset INTEGER NOT NULL,
                slot INTEGER NOT NULL, is_taken INTEGER NOT NULL DEFAULT 0,
                taken_at TEXT DEFAULT NULL, is_skipped INTEGER NOT NULL DEFAULT 0,
                missed_at TEXT DEFAULT NULL
            )
        """)
        conn.commit()
        conn.close()

        SqliteDoseStore(config, db_path=path)
        conn = sqlite3.connect(str(path))
        try:
            columns = [row[1] for row in conn.execute("PRAGMA table_info(doses)")]
        finally:
            conn.close()
        assert "stock_decremented" in columns
