"""
Dose Store

SQLite persistence for medications and their dose instances. Every public
method opens its own connection and commits or rolls back before
returning, so each call is all-or-nothing and always sees the latest
committed state (there is no in-memory cache to go stale).
"""

import json
import sqlite3
import threading
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from pillwatch.errors import StoreConflict
from pillwatch.logger import get_logger
from pillwatch.models import DoseInstance, Medication
from pillwatch.timewindow import start_of_day


TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(TS_FORMAT) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, TS_FORMAT) if value else None


class SqliteDoseStore:
    """Transactional record store for Medication and DoseInstance rows."""

    def __init__(self, config, db_path=None):
        self.config = config
        self.logger = get_logger(__name__, config)

        if db_path is None:
            db_path = config.get("store.db_path", "data/pillwatch.db")
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_lock = threading.Lock()
        self._init_db()

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._db_lock:
            conn = sqlite3.connect(str(self.db_path))
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS medications (
                        id           TEXT PRIMARY KEY,
                        name         TEXT NOT NULL,
                        food_timing  TEXT NOT NULL DEFAULT '',
                        times        TEXT NOT NULL,
                        days         INTEGER NOT NULL,
                        start_date   TEXT NOT NULL,
                        stock        INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
                        is_critical  INTEGER NOT NULL DEFAULT 0,
                        created_at   TEXT NOT NULL DEFAULT (datetime('now', 'localtime')),
                        updated_at   TEXT NOT NULL DEFAULT (datetime('now', 'localtime'))
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS doses (
                        id            TEXT PRIMARY KEY,
                        medication_id TEXT NOT NULL
                                      REFERENCES medications(id) ON DELETE CASCADE,
                        scheduled_at  TEXT NOT NULL,
                        day_offset    INTEGER NOT NULL,
                        slot          INTEGER NOT NULL,
                        is_taken      INTEGER NOT NULL DEFAULT 0,
                        taken_at      TEXT DEFAULT NULL,
                        is_skipped    INTEGER NOT NULL DEFAULT 0,
                        missed_at     TEXT DEFAULT NULL,
                        stock_decremented INTEGER NOT NULL DEFAULT 0,
                        UNIQUE (medication_id, day_offset, slot)
                    )
                """)
                conn.commit()

                # Migrations: add columns if the table predates them
                columns = [row[1] for row in conn.execute("PRAGMA table_info(doses)")]
                if "stock_decremented" not in columns:
                    conn.execute("ALTER TABLE doses ADD COLUMN stock_decremented INTEGER NOT NULL DEFAULT 0")
                    conn.commit()
                    self.logger.info("Migrated: added stock_decremented column")

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_doses_med_time
                    ON doses(medication_id, scheduled_at)
                """)
                conn.commit()
            finally:
                conn.close()
        self.logger.info(f"Dose database ready at {self.db_path}")

    def _conn(self) -> sqlite3.Connection:
        """Get a new SQLite connection with row_factory and FK enforcement."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def refresh(self):
        """No-op: every call already reads committed state."""
        return None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_medication(row: sqlite3.Row) -> Medication:
        times = [time.fromisoformat(t) for t in json.loads(row["times"])]
        return Medication(
            id=row["id"],
            name=row["name"],
            food_timing=row["food_timing"],
            times=times,
            days=row["days"],
            start_date=date.fromisoformat(row["start_date"]),
            stock=row["stock"],
            is_critical=bool(row["is_critical"]),
        )

    @staticmethod
    def _row_to_dose(row: sqlite3.Row) -> DoseInstance:
        return DoseInstance(
            id=row["id"],
            medication_id=row["medication_id"],
            scheduled_at=_parse_ts(row["scheduled_at"]),
            day_offset=row["day_offset"],
            slot=row["slot"],
            is_taken=bool(row["is_taken"]),
            taken_at=_parse_ts(row["taken_at"]),
            is_skipped=bool(row["is_skipped"]),
            missed_at=_parse_ts(row["missed_at"]),
            stock_decremented=bool(row["stock_decremented"]),
        )

    @staticmethod
    def _dose_params(dose: DoseInstance) -> tuple:
        return (dose.id, dose.medication_id, _ts(dose.scheduled_at),
                dose.day_offset, dose.slot, int(dose.is_taken),
                _ts(dose.taken_at), int(dose.is_skipped), _ts(dose.missed_at),
                int(dose.stock_decremented))

    # ------------------------------------------------------------------
    # Medications
    # ------------------------------------------------------------------

    def save_medication(self, medication: Medication) -> Medication:
        """Insert or update a medication."""
        times = json.dumps([t.strftime("%H:%M") for t in medication.times])
        with self._db_lock:
            conn = self._conn()
            try:
                conn.execute("""
                    INSERT INTO medications
                        (id, name, food_timing, times, days, start_date,
                         stock, is_critical)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        food_timing = excluded.food_timing,
                        times = excluded.times,
                        days = excluded.days,
                        start_date = excluded.start_date,
                        stock = excluded.stock,
                        is_critical = excluded.is_critical,
                        updated_at = datetime('now', 'localtime')
                """, (medication.id, medication.name, medication.food_timing,
                      times, medication.days, medication.start_date.isoformat(),
                      medication.stock, int(medication.is_critical)))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not save medication {medication.id}", cause=e)
            finally:
                conn.close()
        return medication

    def get_medication(self, medication_id: str) -> Optional[Medication]:
        with self._db_lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT * FROM medications WHERE id = ?", (medication_id,)
                ).fetchone()
                return self._row_to_medication(row) if row else None
            finally:
                conn.close()

    def list_medications(self, critical_only: bool = False) -> List[Medication]:
        sql = "SELECT * FROM medications"
        if critical_only:
            sql += " WHERE is_critical = 1"
        sql += " ORDER BY created_at ASC, name ASC"
        with self._db_lock:
            conn = self._conn()
            try:
                return [self._row_to_medication(r) for r in conn.execute(sql).fetchall()]
            finally:
                conn.close()

    def delete_medication(self, medication_id: str) -> bool:
        """Delete a medication and, by cascade, all its doses."""
        with self._db_lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    "DELETE FROM medications WHERE id = ?", (medication_id,)
                )
                conn.commit()
                return cur.rowcount > 0
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not delete medication {medication_id}", cause=e)
            finally:
                conn.close()

    def set_stock(self, medication_id: str, stock: int) -> None:
        if stock < 0:
            raise StoreConflict(f"Stock for {medication_id} can't go below zero")
        with self._db_lock:
            conn = self._conn()
            try:
                conn.execute(
                    "UPDATE medications SET stock = ?, "
                    "updated_at = datetime('now', 'localtime') WHERE id = ?",
                    (stock, medication_id)
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not update stock for {medication_id}", cause=e)
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Doses
    # ------------------------------------------------------------------

    def replace_doses(self, medication_id: str, doses: Iterable[DoseInstance]) -> int:
        """Delete every dose of the medication and insert `doses`, atomically."""
        doses = list(doses)
        with self._db_lock:
            conn = self._conn()
            try:
                conn.execute("DELETE FROM doses WHERE medication_id = ?", (medication_id,))
                conn.executemany("""
                    INSERT INTO doses
                        (id, medication_id, scheduled_at, day_offset, slot,
                         is_taken, taken_at, is_skipped, missed_at, stock_decremented)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [self._dose_params(d) for d in doses])
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not regenerate doses for {medication_id}", cause=e)
            finally:
                conn.close()
        return len(doses)

    def get_dose(self, dose_id: str) -> Optional[DoseInstance]:
        with self._db_lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT * FROM doses WHERE id = ?", (dose_id,)).fetchone()
                return self._row_to_dose(row) if row else None
            finally:
                conn.close()

    def list_doses(self, medication_id: str) -> List[DoseInstance]:
        with self._db_lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT * FROM doses WHERE medication_id = ? "
                    "ORDER BY scheduled_at ASC, slot ASC",
                    (medication_id,)
                ).fetchall()
                return [self._row_to_dose(r) for r in rows]
            finally:
                conn.close()

    def doses_between(self, medication_id: str, start: datetime,
                      end: datetime) -> List[DoseInstance]:
        """Doses with start <= scheduled_at < end."""
        with self._db_lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT * FROM doses WHERE medication_id = ? "
                    "AND scheduled_at >= ? AND scheduled_at < ? "
                    "ORDER BY scheduled_at ASC, slot ASC",
                    (medication_id, _ts(start), _ts(end))
                ).fetchall()
                return [self._row_to_dose(r) for r in rows]
            finally:
                conn.close()

    def doses_for_day(self, medication_id: str, day) -> List[DoseInstance]:
        start = start_of_day(day)
        return self.doses_between(medication_id, start, start + timedelta(days=1))

    # ------------------------------------------------------------------
    # Dose state changes
    # ------------------------------------------------------------------

    def mark_taken(self, dose_id: str, taken_at: datetime) -> Tuple[bool, Optional[int]]:
        """Mark a dose taken and decrement stock in one transaction.

        Returns (changed, previous_stock). Taking an already-taken dose
        is a no-op: (False, None). The dose row remembers whether a pill
        was actually consumed so undo_taken can give it back.
        """
        with self._db_lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT d.is_taken, d.medication_id, m.stock FROM doses d "
                    "JOIN medications m ON m.id = d.medication_id WHERE d.id = ?",
                    (dose_id,)
                ).fetchone()
                if row is None:
                    raise StoreConflict(f"Dose {dose_id} no longer exists")
                if row["is_taken"]:
                    return False, None

                previous_stock = row["stock"]
                decremented = previous_stock > 0
                conn.execute(
                    "UPDATE doses SET is_taken = 1, taken_at = ?, is_skipped = 0, "
                    "stock_decremented = ? WHERE id = ?",
                    (_ts(taken_at), int(decremented), dose_id)
                )
                if decremented:
                    conn.execute(
                        "UPDATE medications SET stock = stock - 1, "
                        "updated_at = datetime('now', 'localtime') WHERE id = ?",
                        (row["medication_id"],)
                    )
                conn.commit()
                return True, previous_stock
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not mark dose {dose_id} taken", cause=e)
            finally:
                conn.close()

    def undo_taken(self, dose_id: str) -> bool:
        """Revert a taken dose and give back the pill it consumed, if any."""
        with self._db_lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT is_taken, medication_id, stock_decremented FROM doses WHERE id = ?",
                    (dose_id,)
                ).fetchone()
                if row is None or not row["is_taken"]:
                    return False
                conn.execute(
                    "UPDATE doses SET is_taken = 0, taken_at = NULL, stock_decremented = 0 "
                    "WHERE id = ?",
                    (dose_id,)
                )
                if row["stock_decremented"]:
                    conn.execute(
                        "UPDATE medications SET stock = stock + 1, "
                        "updated_at = datetime('now', 'localtime') WHERE id = ?",
                        (row["medication_id"],)
                    )
                conn.commit()
                return True
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not undo dose {dose_id}", cause=e)
            finally:
                conn.close()

    def _update_dose(self, dose_id: str, sql: str, params: tuple, action: str) -> bool:
        with self._db_lock:
            conn = self._conn()
            try:
                cur = conn.execute(sql, params + (dose_id,))
                conn.commit()
                return cur.rowcount > 0
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreConflict(f"Could not {action} dose {dose_id}", cause=e)
            finally:
                conn.close()

    def mark_skipped(self, dose_id: str) -> bool:
        """Returns False if the dose is gone or already resolved."""
        return self._update_dose(
            dose_id,
            "UPDATE doses SET is_skipped = 1 WHERE is_taken = 0 AND is_skipped = 0 AND id = ?",
            (), "skip",
        )

    def mark_missed(self, dose_id: str, missed_at: datetime) -> bool:
        return self._update_dose(
            dose_id,
            "UPDATE doses SET missed_at = ? WHERE is_taken = 0 AND missed_at IS NULL AND id = ?",
            (_ts(missed_at),), "record missed",
        )
