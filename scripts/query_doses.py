#!/usr/bin/env python3
"""Quick dose database query tool for testing/debugging.

Usage:
    python3 scripts/query_doses.py                 # Show today's doses
    python3 scripts/query_doses.py meds            # List medications
    python3 scripts/query_doses.py open            # Open doses up to now
    python3 scripts/query_doses.py missed          # Doses recorded as missed
    python3 scripts/query_doses.py med <id>        # Every dose of one medication
    python3 scripts/query_doses.py search "aspirin" # Search medications by name

The database path comes from store.db_path in $PILLWATCH_CONFIG (or
./config.yaml), defaulting to data/pillwatch.db.
"""
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

from pillwatch.config import load_config


DB_PATH = load_config().get("store.db_path", "data/pillwatch.db")


def query(sql, params=()):
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def fmt_meds(rows):
    if not rows:
        print("  (none)")
        return
    for r in rows:
        crit = " [critical]" if r["is_critical"] else ""
        print(f"  {r['id']} | {r['name']:20s} | {r['times']} x {r['days']}d "
              f"from {r['start_date']} | stock {r['stock']}{crit}")


def fmt_doses(rows):
    if not rows:
        print("  (none)")
        return
    for r in rows:
        if r["is_taken"]:
            state = f"taken {r['taken_at']}"
        elif r["is_skipped"]:
            state = "skipped"
        elif r["missed_at"]:
            state = f"MISSED {r['missed_at']}"
        else:
            state = "open"
        print(f"  {r['scheduled_at']} | {r['name']:20s} | {state:28s} | {r['id']}")


DOSE_SELECT = ("SELECT d.*, m.name FROM doses d "
               "JOIN medications m ON m.id = d.medication_id ")


def main():
    if not Path(DB_PATH).exists():
        print(f"Database not found: {DB_PATH}")
        sys.exit(1)

    arg = sys.argv[1] if len(sys.argv) > 1 else "today"

    if arg == "today":
        today = datetime.now().strftime("%Y-%m-%d")
        print(f"=== Doses for {today} ===")
        rows = query(
            DOSE_SELECT + "WHERE d.scheduled_at BETWEEN ? AND ? ORDER BY d.scheduled_at",
            (f"{today} 00:00:00", f"{today} 23:59:59")
        )
        fmt_doses(rows)
    elif arg == "meds":
        print("=== Medications ===")
        fmt_meds(query("SELECT * FROM medications ORDER BY created_at"))
    elif arg == "open":
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        print("=== Open doses ===")
        rows = query(
            DOSE_SELECT + "WHERE d.is_taken = 0 AND d.is_skipped = 0 "
            "AND d.missed_at IS NULL AND d.scheduled_at <= ? ORDER BY d.scheduled_at",
            (now,)
        )
        fmt_doses(rows)
    elif arg == "missed":
        print("=== Missed doses ===")
        rows = query(DOSE_SELECT + "WHERE d.missed_at IS NOT NULL ORDER BY d.scheduled_at DESC")
        fmt_doses(rows)
    elif arg == "med" and len(sys.argv) > 2:
        rows = query(DOSE_SELECT + "WHERE d.medication_id = ? ORDER BY d.scheduled_at",
                     (sys.argv[2],))
        fmt_doses(rows)
    elif arg == "search" and len(sys.argv) > 2:
        term = sys.argv[2]
        print(f"=== Search: '{term}' ===")
        fmt_meds(query("SELECT * FROM medications WHERE name LIKE ? ORDER BY name",
                       (f"%{term}%",)))
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
