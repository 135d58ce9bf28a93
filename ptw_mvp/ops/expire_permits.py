"""Expire approved permits whose work date has passed.

  python -m ptw_mvp.ops.expire_permits --db data/ptw.db [--today 2026-03-01]

Each expired permit gets one `expired` history entry performed by `system`.
Run it daily, shortly after midnight UTC.

Exit codes:
  0 success
  2 DB missing
"""

from __future__ import annotations

import argparse
from datetime import date, datetime, timezone
from pathlib import Path

from ptw_mvp.app.main import db, db_path as default_db_path, expire_overdue_permits


def run(db_path: Path, today: date | None = None) -> list[str]:
    today = today or datetime.now(timezone.utc).date()
    with db(str(db_path)) as conn:
        return expire_overdue_permits(conn, today)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Move approved permits past their work date to expired.")
    ap.add_argument("--db", default=None, help="SQLite store (default: $PTW_DATA_DIR/ptw.db)")
    ap.add_argument("--today", type=date.fromisoformat, default=None, help="override today (YYYY-MM-DD)")
    args = ap.parse_args(argv)

    db_path = Path(args.db or default_db_path())
    if not db_path.exists():
        raise SystemExit(2)

    expired = run(db_path, args.today)
    print(f"expired={len(expired)}" + (f" {', '.join(expired)}" if expired else ""))


if __name__ == "__main__":
    main()
