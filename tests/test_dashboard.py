from datetime import date, datetime, timedelta, timezone

from conftest import create_permit


def _approve(client, headers, pid):
    client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["user"])
    client.post(f"/api/permits/{pid}/validate", json={"approved": True}, headers=headers["supervisor"])
    r = client.post(f"/api/permits/{pid}/approve", json={"approved": True}, headers=headers["supervisor"])
    assert r.json()["status"] == "approved"


def test_dashboard_counts(client, headers):
    today = datetime.now(timezone.utc).date()

    create_permit(client, headers["user"])  # draft: not counted
    pending = create_permit(client, headers["user"])
    client.post(f"/api/permits/{pending['id']}/submit-for-validation", json={}, headers=headers["user"])

    due_today = create_permit(client, headers["user"], workDate=today.isoformat())
    later = create_permit(client, headers["user"], workDate=(today + timedelta(days=5)).isoformat())
    _approve(client, headers, due_today["id"])
    _approve(client, headers, later["id"])

    closed = create_permit(client, headers["user"])
    _approve(client, headers, closed["id"])
    client.post(f"/api/permits/{closed['id']}/close", json={}, headers=headers["supervisor"])

    r = client.get("/api/dashboard/stats", headers=headers["operator"])
    assert r.status_code == 200
    assert r.json() == {
        "activePermits": 2,
        "pendingPermits": 1,
        "approvedToday": 2,
        "expiringToday": 1,
    }


def test_dashboard_stats_for_given_day(store):
    from ptw_mvp.app.main import dashboard_stats, db

    with db() as conn:
        conn.executemany(
            "INSERT INTO permits(id, permit_number, type, status, work_date, created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
            [
                ("a", "PT-2026-001", "hot", "approved", "2026-03-10", "2026-03-01T08:00:00+00:00", "2026-03-10T09:00:00+00:00"),
                ("b", "PT-2026-002", "cold", "approved", "2026-03-11", "2026-03-01T08:00:00+00:00", "2026-03-09T09:00:00+00:00"),
                ("c", "PT-2026-003", "cold", "pending_approval", "2026-03-10", "2026-03-01T08:00:00+00:00", "2026-03-10T09:00:00+00:00"),
                ("d", "PT-2026-004", "cold", "pending_validation", "2026-03-10", "2026-03-01T08:00:00+00:00", "2026-03-10T09:00:00+00:00"),
                ("e", "PT-2026-005", "excavation", "expired", "2026-03-10", "2026-03-01T08:00:00+00:00", "2026-03-10T09:00:00+00:00"),
            ],
        )

    with db() as conn:
        stats = dashboard_stats(conn, date(2026, 3, 10))
    assert stats == {"activePermits": 2, "pendingPermits": 2, "approvedToday": 1, "expiringToday": 1}


def test_expire_overdue_permits(client, headers):
    from ptw_mvp.app.main import db, expire_overdue_permits

    today = datetime.now(timezone.utc).date()
    overdue = create_permit(client, headers["user"], workDate=(today - timedelta(days=1)).isoformat())
    current = create_permit(client, headers["user"], workDate=today.isoformat())
    _approve(client, headers, overdue["id"])
    _approve(client, headers, current["id"])

    with db() as conn:
        expired = expire_overdue_permits(conn, today)
    assert expired == [overdue["permitNumber"]]

    assert client.get(f"/api/permits/{overdue['id']}", headers=headers["user"]).json()["status"] == "expired"
    assert client.get(f"/api/permits/{current['id']}", headers=headers["user"]).json()["status"] == "approved"

    last = client.get(f"/api/permits/{overdue['id']}/history", headers=headers["user"]).json()[-1]
    assert (last["action"], last["performedBy"]) == ("expired", "system")

    # Expired permits can no longer be closed.
    r = client.post(f"/api/permits/{overdue['id']}/close", json={}, headers=headers["supervisor"])
    assert r.status_code == 409

    with db() as conn:
        assert expire_overdue_permits(conn, today) == []
