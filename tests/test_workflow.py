import pytest

from conftest import create_permit


def _actions(client, permit_id, h):
    r = client.get(f"/api/permits/{permit_id}/history", headers=h)
    assert r.status_code == 200
    return [e["action"] for e in r.json()]


def test_full_lifecycle(client, headers, user_ids):
    p = create_permit(client, headers["user"])
    assert p["status"] == "draft"
    pid = p["id"]

    r = client.post(
        f"/api/permits/{pid}/submit-for-validation",
        json={"validatorId": user_ids["supervisor"], "comments": "Listo"},
        headers=headers["user"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending_validation"
    assert r.json()["validatedBy"] == user_ids["supervisor"]

    r = client.post(f"/api/permits/{pid}/validate", json={"approved": True, "comments": "OK"}, headers=headers["supervisor"])
    assert r.json()["status"] == "pending_approval"
    assert r.json()["validationComments"] == "OK"

    r = client.post(f"/api/permits/{pid}/approve", json={"approved": True, "comments": "Aprobado"}, headers=headers["supervisor"])
    body = r.json()
    assert body["status"] == "approved"
    assert body["approvedBy"] == user_ids["supervisor"]
    assert body["approvalComments"] == "Aprobado"

    r = client.post(f"/api/permits/{pid}/close", json={"comments": "Trabajo terminado"}, headers=headers["supervisor"])
    assert r.json()["status"] == "closed"

    assert _actions(client, pid, headers["user"]) == [
        "created",
        "submitted_for_validation",
        "validated",
        "approved",
        "closed",
    ]
    # Permit number never changes through the workflow.
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["permitNumber"] == p["permitNumber"]


def test_history_grows_with_each_action(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    sizes = [len(_actions(client, pid, headers["user"]))]

    client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["user"])
    sizes.append(len(_actions(client, pid, headers["user"])))
    client.post(f"/api/permits/{pid}/validate", json={"approved": True}, headers=headers["supervisor"])
    sizes.append(len(_actions(client, pid, headers["user"])))

    assert sizes == [1, 2, 3]


def _to_status(client, headers, pid, status):
    steps = {
        "draft": [],
        "pending_validation": ["submit"],
        "pending_approval": ["submit", "validate"],
        "approved": ["submit", "validate", "approve"],
        "closed": ["submit", "validate", "approve", "close"],
    }[status]
    for step in steps:
        if step == "submit":
            r = client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["user"])
        elif step == "close":
            r = client.post(f"/api/permits/{pid}/close", json={}, headers=headers["supervisor"])
        else:
            r = client.post(f"/api/permits/{pid}/{step}", json={"approved": True}, headers=headers["supervisor"])
        assert r.status_code == 200, r.text


@pytest.mark.parametrize("start", ["draft", "pending_validation", "pending_approval"])
def test_validator_rejection_from_open_states(client, headers, start):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, start)

    r = client.post(
        f"/api/permits/{pid}/validate",
        json={"approved": False, "comments": "Falta análisis de riesgos"},
        headers=headers["supervisor"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "rejected"
    assert r.json()["rejectionReason"] == "Falta análisis de riesgos"
    assert _actions(client, pid, headers["user"])[-1] == "rejected_by_validator"


@pytest.mark.parametrize("start", ["approved", "closed"])
def test_validator_rejection_refused_after_approval(client, headers, start):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, start)

    r = client.post(f"/api/permits/{pid}/validate", json={"approved": False}, headers=headers["supervisor"])
    assert r.status_code == 409
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["status"] == start


def test_supervisor_rejection(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, "pending_approval")

    r = client.post(f"/api/permits/{pid}/approve", json={"approved": False, "comments": "No"}, headers=headers["supervisor"])
    assert r.json()["status"] == "rejected"
    assert r.json()["rejectionReason"] == "No"
    assert _actions(client, pid, headers["user"])[-1] == "rejected_by_supervisor"


@pytest.mark.parametrize(
    "start,path,body",
    [
        ("draft", "validate", {"approved": True}),
        ("pending_validation", "approve", {"approved": True}),
        ("draft", "approve", {"approved": False}),
        ("pending_approval", "close", {}),
        ("approved", "approve", {"approved": True}),
    ],
)
def test_invalid_transitions_conflict(client, headers, start, path, body):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, start)
    before = _actions(client, pid, headers["user"])

    r = client.post(f"/api/permits/{pid}/{path}", json=body, headers=headers["supervisor"])
    assert r.status_code == 409
    assert _actions(client, pid, headers["user"]) == before


def test_submit_twice_conflicts(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, "pending_validation")
    r = client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["user"])
    assert r.status_code == 409


def test_forbidden_is_checked_before_state(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    # A plain user may not approve, whatever the state.
    r = client.post(f"/api/permits/{pid}/approve", json={"approved": True}, headers=headers["user"])
    assert r.status_code == 403


def test_missing_permit_is_404(client, headers):
    r = client.post("/api/permits/nope/validate", json={"approved": True}, headers=headers["supervisor"])
    assert r.status_code == 404
    assert r.json() == {"detail": "Permit not found"}


def test_only_creator_or_admin_submits(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    r = client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["operator"])
    assert r.status_code == 403

    r = client.post(f"/api/permits/{pid}/submit-for-validation", json={}, headers=headers["admin"])
    assert r.status_code == 200


def test_assigned_validator_may_validate(client, headers, user_ids):
    pid = create_permit(client, headers["user"])["id"]
    other = create_permit(client, headers["user"])["id"]
    for p in (pid, other):
        client.post(
            f"/api/permits/{p}/submit-for-validation",
            json={"validatorId": user_ids["operator"]} if p == pid else {},
            headers=headers["user"],
        )

    r = client.post(f"/api/permits/{other}/validate", json={"approved": True}, headers=headers["operator"])
    assert r.status_code == 403

    r = client.post(f"/api/permits/{pid}/validate", json={"approved": True}, headers=headers["operator"])
    assert r.status_code == 200
    assert r.json()["status"] == "pending_approval"


def test_unknown_validator_rejected(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    r = client.post(f"/api/permits/{pid}/submit-for-validation", json={"validatorId": "ghost"}, headers=headers["user"])
    assert r.status_code == 400
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["status"] == "draft"


def test_decision_requires_approved_flag(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, "pending_validation")
    r = client.post(f"/api/permits/{pid}/validate", json={"comments": "?"}, headers=headers["supervisor"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Validation error"


def test_edit_draft_only(client, headers):
    pid = create_permit(client, headers["user"])["id"]

    r = client.patch(
        f"/api/permits/{pid}",
        json={"workDescription": "Soldadura de brida", "comments": "Corrige descripción"},
        headers=headers["user"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["workDescription"] == "Soldadura de brida"
    assert r.json()["executorCompany"] == "Servicios Industriales del Sur"
    assert _actions(client, pid, headers["user"]) == ["created", "updated"]

    _to_status(client, headers, pid, "pending_validation")
    r = client.patch(f"/api/permits/{pid}", json={"workDescription": "Otro"}, headers=headers["user"])
    assert r.status_code == 409


def test_edit_cannot_touch_workflow_fields(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    for body in ({"status": "approved"}, {"permitNumber": "PT-1999-001"}, {"approvedBy": "x"}):
        r = client.patch(f"/api/permits/{pid}", json=body, headers=headers["user"])
        assert r.status_code == 400, body
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["status"] == "draft"


def test_edit_by_other_user_forbidden(client, headers):
    pid = create_permit(client, headers["user"])["id"]
    r = client.patch(f"/api/permits/{pid}", json={"areaSite": "X"}, headers=headers["operator"])
    assert r.status_code == 403


def test_creator_cannot_be_own_validator(client, headers, user_ids):
    pid = create_permit(client, headers["user"])["id"]

    r = client.post(
        f"/api/permits/{pid}/submit-for-validation",
        json={"validatorId": user_ids["user"]},
        headers=headers["user"],
    )
    assert r.status_code == 400
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["status"] == "draft"


def test_creator_assigned_as_validator_still_cannot_validate(client, headers, user_ids):
    from ptw_mvp.app.main import db

    pid = create_permit(client, headers["user"])["id"]
    _to_status(client, headers, pid, "pending_validation")
    with db() as conn:
        conn.execute("UPDATE permits SET validated_by=? WHERE id=?", (user_ids["user"], pid))

    r = client.post(f"/api/permits/{pid}/validate", json={"approved": True}, headers=headers["user"])
    assert r.status_code == 403
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["status"] == "pending_validation"


def test_edit_refuses_null_work_date(client, headers):
    pid = create_permit(client, headers["user"])["id"]

    r = client.patch(f"/api/permits/{pid}", json={"workDate": None}, headers=headers["user"])
    assert r.status_code == 400
    assert client.get(f"/api/permits/{pid}", headers=headers["user"]).json()["workDate"] == "2030-05-01"
