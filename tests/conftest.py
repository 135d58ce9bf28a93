import io
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter

REPO_ROOT = Path(__file__).resolve().parents[1]

# Prefer repo sources over any installed package.
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

DEMO_PASSWORDS = {
    "admin": ("admin@example.com", "admin"),
    "supervisor": ("x@example.com", "secret"),
    "user": ("user@example.com", "user"),
    "operator": ("operator@example.com", "operator"),
}


def blank_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=595, height=842)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class FakeRenderer:
    """Stands in for headless Chromium: records the HTML, returns a blank A4 PDF."""

    def __init__(self, pages: int = 1):
        self.pages = pages
        self.calls: list[str] = []

    def render(self, html: str) -> bytes:
        self.calls.append(html)
        return blank_pdf(self.pages)


@pytest.fixture(autouse=True)
def data_dir(monkeypatch, tmp_path):
    d = tmp_path / "data"
    monkeypatch.setenv("PTW_DATA_DIR", str(d))
    monkeypatch.setenv("PTW_SEED_DEMO_USERS", "1")
    return d


@pytest.fixture
def store(data_dir):
    from ptw_mvp.app.main import db_path, init_db

    init_db()
    return db_path()


@pytest.fixture
def renderer(monkeypatch):
    from ptw_mvp.app.main import app

    fake = FakeRenderer()
    monkeypatch.setattr(app.state, "pdf_renderer", fake)
    return fake


@pytest.fixture
def client(renderer):
    from ptw_mvp.app.main import app

    with TestClient(app) as c:
        yield c


def login(client: TestClient, role: str) -> dict[str, str]:
    email, password = DEMO_PASSWORDS[role]
    r = client.post("/api/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    # Requests authenticate with the bearer header only.
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def headers(client):
    return {role: login(client, role) for role in DEMO_PASSWORDS}


@pytest.fixture
def user_ids(client, headers):
    out = {}
    for role, h in headers.items():
        out[role] = client.get("/api/auth/user", headers=h).json()["id"]
    return out


def permit_payload(**overrides):
    payload = {
        "type": "hot",
        "executorCompany": "Servicios Industriales del Sur",
        "stationDuct": "Estación 3",
        "areaSite": "Taller",
        "workOrderNumber": "OT-1001",
        "workDescription": "Soldadura de soporte",
        "workDate": "2030-05-01",
        "validFrom": "08:00",
        "validTo": "17:00",
        "ppeRequirements": ["Casco y barbiquejo", "Gafas de seguridad"],
        "checklistResponses": {"¿Se dispone de extintores portátiles en el sitio de trabajo?": "si"},
    }
    payload.update(overrides)
    return payload


def create_permit(client: TestClient, h: dict[str, str], **overrides) -> dict:
    r = client.post("/api/permits", json=permit_payload(**overrides), headers=h)
    assert r.status_code == 200, r.text
    return r.json()
