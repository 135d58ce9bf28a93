"""Seed the local store with demo permits across the workflow.

Local-only data so a fresh install has something in every dashboard bucket.

Run:
  python -m ptw_mvp.seed.seed_demo

Then start the app:
  uvicorn ptw_mvp.app.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from ptw_mvp.app.main import apply_transition, create_permit, db, init_db
from ptw_mvp.app.permit_types import PERMIT_TYPES


def _user_id(conn, email: str) -> str:
    row = conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone()
    if not row:
        raise SystemExit(f"Demo user {email} missing; is PTW_SEED_DEMO_USERS=0?")
    return str(row["id"])


def _fields(permit_type: str, work_date: str, description: str, area: str) -> dict[str, Any]:
    cfg = PERMIT_TYPES[permit_type]
    return {
        "type": permit_type,
        "executor_company": "Servicios Industriales del Sur",
        "station_duct": "Estación Compresora 3",
        "area_site": area,
        "work_order_number": f"OT-{work_date.replace('-', '')}",
        "work_description": description,
        "work_date": work_date,
        "valid_from": "08:00",
        "valid_to": "17:00",
        "checklist_responses": {q: "si" for q in cfg["checklist"][:5]},
        "ppe_requirements": list(cfg["ppe"][:4]),
        "apt_analysis": {
            "workActivityName": description,
            "analysisLeader": "Validador Supervisor",
            "aptRows": [
                {
                    "workSteps": "Delimitar el área",
                    "hazards": "Tránsito de vehículos",
                    "threats": "Atropello",
                    "barriers": "Señalización y vigía",
                }
            ],
            "dailyTalk": {"Objetivos del trabajo": "si", "Peligros": "si"},
            "observations": "",
            "participants": [{"name": "Usuario Solicitante", "signature": ""}],
        },
        "special_instructions": "Mantener comunicación con Sala de Control.",
    }


def main() -> None:
    init_db()
    today = datetime.now(timezone.utc).date()

    with db() as conn:
        requester = _user_id(conn, "user@example.com")
        supervisor = _user_id(conn, "x@example.com")

    # (type, days from today, description, area, workflow steps to run)
    plan: list[tuple[str, int, str, str, list[tuple[str, bool]]]] = [
        ("cold", 1, "Cambio de empaquetadura en válvula de bloqueo", "Patio de válvulas", []),
        ("hot", 2, "Soldadura de soporte de tubería", "Taller", [("submit-for-validation", True)]),
        (
            "excavation",
            3,
            "Excavación para inspección de ducto enterrado",
            "Derecho de vía km 12",
            [("submit-for-validation", True), ("validate", True)],
        ),
        (
            "cold",
            0,
            "Calibración de transmisores de presión",
            "Sala de instrumentos",
            [("submit-for-validation", True), ("validate", True), ("approve", True)],
        ),
        (
            "hot",
            -1,
            "Corte de tubería fuera de servicio",
            "Patio de tuberías",
            [("submit-for-validation", True), ("validate", True), ("approve", False)],
        ),
    ]

    for permit_type, days, description, area, steps in plan:
        work_date = (today + timedelta(days=days)).isoformat()
        with db() as conn:
            row = create_permit(conn, _fields(permit_type, work_date, description, area), requester)
        number = row["permit_number"]

        for action, approved in steps:
            actor, role = (requester, "user") if action == "submit-for-validation" else (supervisor, "supervisor")
            with db() as conn:
                apply_transition(
                    conn,
                    str(row["id"]),
                    action,
                    actor,
                    role,
                    approved=approved,
                    comments=None if approved else "Falta medición de atmósfera",
                    validator_id=supervisor if action == "submit-for-validation" else None,
                )
        print(f"Seeded {number} ({permit_type}, {len(steps)} step(s))")


if __name__ == "__main__":
    main()
