"""Retention cleanup for rendered permit PDFs.

Deletes files from the exports dir and removes the matching export_artifacts
rows once they are past their retention window.

Meant to run from an OS scheduler (systemd timer / cron) or by hand:

  python -m ptw_mvp.ops.cleanup_exports --db data/ptw.db --exports-dir data/exports

Files outside the exports dir are never touched.

Exit codes:
  0 success
  2 DB missing
"""

from __future__ import annotations

import argparse
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ptw_mvp.app.main import db_path as default_db_path
from ptw_mvp.app.main import exports_dir as default_exports_dir


def _parse_iso(s: str) -> datetime | None:
    s = (s or "").strip()
    if not s:
        return None
    # Stored as 2026-02-08T14:06:00+00:00; tolerate Z.
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Result:
    scanned: int = 0
    expired: int = 0
    deleted_files: int = 0
    missing_files: int = 0
    skipped_outside: int = 0
    db_rows_deleted: int = 0


def _inside(path: Path, root: Path) -> bool:
    p_abs = path.resolve()
    root_abs = root.resolve()
    return root_abs in p_abs.parents


def cleanup(db_path: Path, exports_dir: Path, now: datetime | None = None) -> Result:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    res = Result()

    try:
        rows = conn.execute(
            "SELECT id, path, exported_at, retention_days FROM export_artifacts ORDER BY exported_at ASC"
        ).fetchall()

        for r in rows:
            res.scanned += 1

            exported_at = _parse_iso(str(r["exported_at"] or ""))
            if not exported_at:
                continue
            if now <= exported_at + timedelta(days=int(r["retention_days"])):
                continue

            res.expired += 1

            p = Path(str(r["path"] or ""))
            if not _inside(p, exports_dir):
                res.skipped_outside += 1
                continue

            if p.exists():
                try:
                    p.unlink()
                except OSError:
                    # Keep the row so the next run retries.
                    continue
                res.deleted_files += 1
            else:
                res.missing_files += 1

            conn.execute("DELETE FROM export_artifacts WHERE id=?", (str(r["id"]),))
            res.db_rows_deleted += 1

        conn.commit()
    finally:
        conn.close()
    return res


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Delete permit PDFs past their retention window.")
    ap.add_argument("--db", default=None, help="SQLite store (default: $PTW_DATA_DIR/ptw.db)")
    ap.add_argument("--exports-dir", default=None, help="exports dir (default: $PTW_DATA_DIR/exports)")
    args = ap.parse_args(argv)

    db_path = Path(args.db or default_db_path())
    if not db_path.exists():
        raise SystemExit(2)

    exports_dir = Path(args.exports_dir or default_exports_dir())
    exports_dir.mkdir(parents=True, exist_ok=True)

    res = cleanup(db_path=db_path, exports_dir=exports_dir)
    print(res)


if __name__ == "__main__":
    main()
