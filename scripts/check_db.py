#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from expense_tracker.db import connect_db, parse_database_config
from expense_tracker.db_migrations import apply_migrations, get_db_health


def import_stats(config):
    conn = connect_db(config)
    try:
        sessions = conn.execute(
            "SELECT status, COUNT(*) AS total FROM import_sessions GROUP BY status ORDER BY status"
        ).fetchall()
        totals = conn.execute(
            "SELECT COUNT(*) AS imports, COALESCE(SUM(imported_rows), 0) AS imported_rows FROM import_history"
        ).fetchone()
    finally:
        conn.close()
    return {
        "sessions_by_status": {row["status"]: row["total"] for row in sessions},
        "completed_imports": totals["imports"],
        "imported_rows": totals["imported_rows"],
    }


def main():
    parser = argparse.ArgumentParser(description="Check and print DB schema health")
    parser.add_argument("db_path", nargs="?", default="instance/expense_tracker.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    parser.add_argument("--import-stats", action="store_true", help="Also print CSV import session counts")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    report = get_db_health(config)
    if args.import_stats and not report["missing_tables"]:
        report["imports"] = import_stats(config)
    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
