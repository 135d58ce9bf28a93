#!/usr/bin/env python3
"""Validate that a permit store adheres to its data contract.

Rules checked:
1. Permit numbers: every number matches PT-YYYY-NNN and is unique.
2. Vocabulary: every permit has a known status and type.
3. History: every permit has history, and its first entry is `created`.
4. Counters: no year's counter is behind the highest number issued that year.
"""

from __future__ import annotations

import argparse
import sqlite3
import sys
from collections import Counter
from pathlib import Path

from ptw_mvp.app.main import PERMIT_NUMBER_RE, STATUSES, db_path as default_db_path
from ptw_mvp.app.permit_types import PERMIT_TYPES


def validate_store(db_path: str) -> bool:
    print(f"Validating permit store at {db_path}...")

    if not Path(db_path).exists():
        print(f"❌ DB file not found: {db_path}")
        return False

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    failures = 0

    try:
        permits = conn.execute("SELECT id, permit_number, status, type FROM permits").fetchall()

        # 1. Permit numbers
        print("--- Permit Number Validation ---")
        bad = [r["permit_number"] for r in permits if not PERMIT_NUMBER_RE.match(str(r["permit_number"]))]
        dupes = [n for n, c in Counter(r["permit_number"] for r in permits).items() if c > 1]
        if bad:
            print(f"❌ Malformed permit numbers: {bad}")
            failures += 1
        else:
            print("✅ All permit numbers match PT-YYYY-NNN.")
        if dupes:
            print(f"❌ Duplicate permit numbers: {dupes}")
            failures += 1
        else:
            print("✅ Permit numbers are unique.")

        # 2. Vocabulary
        print("\n--- Status / Type Validation ---")
        unknown = [
            (r["permit_number"], r["status"], r["type"])
            for r in permits
            if r["status"] not in STATUSES or r["type"] not in PERMIT_TYPES
        ]
        if unknown:
            print(f"❌ Permits with unknown status or type: {unknown}")
            failures += 1
        else:
            print("✅ All statuses and types are known.")

        # 3. History
        print("\n--- History Validation ---")
        history_failures = 0
        for r in permits:
            first = conn.execute(
                "SELECT action FROM permit_history WHERE permit_id=? ORDER BY id ASC LIMIT 1",
                (r["id"],),
            ).fetchone()
            if first is None:
                print(f"❌ Permit {r['permit_number']} has no history.")
                history_failures += 1
            elif first["action"] != "created":
                print(f"❌ Permit {r['permit_number']} history starts with '{first['action']}'.")
                history_failures += 1
        if history_failures == 0:
            print("✅ Every permit has history starting with 'created'.")
        else:
            failures += 1

        # 4. Counters
        print("\n--- Counter Validation ---")
        highest: dict[int, int] = {}
        for r in permits:
            m = PERMIT_NUMBER_RE.match(str(r["permit_number"]))
            if m:
                year, seq = int(m.group(1)), int(m.group(2))
                highest[year] = max(highest.get(year, 0), seq)
        counters = {int(r["year"]): int(r["last_seq"]) for r in conn.execute("SELECT * FROM permit_counters")}
        behind = {y: (counters[y], s) for y, s in highest.items() if y in counters and counters[y] < s}
        if behind:
            print(f"❌ Counters behind issued numbers (counter, highest): {behind}")
            failures += 1
        else:
            print("✅ Counters are consistent with issued numbers.")
    finally:
        conn.close()

    if failures == 0:
        print("\n✅ VALIDATION PASSED: store adheres to the permit data contract.")
        return True
    print(f"\n❌ VALIDATION FAILED: {failures} rule violations found.")
    return False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Validate the permit store data contract.")
    parser.add_argument("--db", default=None, help="SQLite store (default: $PTW_DATA_DIR/ptw.db)")
    args = parser.parse_args(argv)

    success = validate_store(args.db or default_db_path())
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
