from __future__ import annotations

import hashlib
import json
import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Iterator, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .pdf import PdfRenderer, PlaywrightPdfRenderer, pdf_page_count, render_permit_html
from .permit_types import catalog

Status = Literal[
    "draft",
    "pending_validation",
    "pending_approval",
    "approved",
    "rejected",
    "expired",
    "closed",
]
Role = Literal["admin", "supervisor", "user", "operator"]
PermitKind = Literal["excavation", "hot", "cold"]

STATUSES: tuple[str, ...] = (
    "draft",
    "pending_validation",
    "pending_approval",
    "approved",
    "rejected",
    "expired",
    "closed",
)
OPEN_STATUSES: tuple[Status, ...] = ("draft", "pending_validation", "pending_approval")
PENDING_STATUSES: tuple[Status, ...] = ("pending_validation", "pending_approval")
ROLES: tuple[str, ...] = ("admin", "supervisor", "user", "operator")

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DEFAULT_DATA_DIR = os.path.join(BASE_DIR, "data")
DB_FILENAME = "ptw.db"

PERMIT_NUMBER_RE = re.compile(r"^PT-(\d{4})-(\d{3,})$")
HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
# Photos are embedded in the printed PDF; only inline images and https URLs are rendered.
PHOTO_SRC_PATTERN = r"^(data:image/|https://)"

SESSION_COOKIE = "ptw_session"
SYSTEM_ACTOR = "system"

DEFAULT_HISTORY_COMMENTS: dict[str, str] = {
    "created": "Permit created",
    "updated": "Permit updated",
    "submitted_for_validation": "Submitted for validation",
    "closed": "Permit closed",
    "expired": "Work date passed; permit expired",
}


def data_dir() -> str:
    return os.environ.get("PTW_DATA_DIR") or DEFAULT_DATA_DIR


def db_path() -> str:
    return os.path.join(data_dir(), DB_FILENAME)


def exports_dir() -> str:
    return os.path.join(data_dir(), "exports")


def export_retention_days() -> int:
    return int(os.environ.get("PTW_EXPORT_RETENTION_DAYS", "30"))


app = FastAPI(title="Work Permit Management")
app.state.pdf_renderer = PlaywrightPdfRenderer()


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation error", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all so API clients always get a JSON error body."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Unhandled error: {type(exc).__name__}: {exc}"},
    )


# --- Storage ---


def _connect(path: str | None = None) -> sqlite3.Connection:
    path = path or db_path()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    # timeout: how long sqlite3 waits on a locked DB before raising OperationalError.
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row

    # Pragmas are per-connection.
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 10000")
    return conn


@contextmanager
def db(path: str | None = None) -> Iterator[sqlite3.Connection]:
    """Open a connection to the permit store, commit on success, always close.

    FastAPI sync routes run in a threadpool; every request gets its own
    connection. Writers open `BEGIN IMMEDIATE` so read-check-update sequences
    hold the write lock for their whole duration.
    """
    conn = _connect(path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db_path(path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    with db(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT NOT NULL UNIQUE,
              first_name TEXT NOT NULL DEFAULT '',
              last_name TEXT NOT NULL DEFAULT '',
              role TEXT NOT NULL,
              password_salt_hex TEXT NOT NULL,
              password_hash_hex TEXT NOT NULL,
              demo_password TEXT,
              created_at TEXT NOT NULL,
              created_by TEXT NOT NULL,
              disabled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS sessions (
              token TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              revoked_at TEXT,
              FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS permits (
              id TEXT PRIMARY KEY,
              permit_number TEXT NOT NULL UNIQUE,
              type TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'draft',

              executor_company TEXT,
              station_duct TEXT,
              area_site TEXT,
              work_order_number TEXT,
              work_description TEXT,
              work_date TEXT,
              valid_from TEXT,
              valid_to TEXT,

              checklist_responses_json TEXT,
              ppe_requirements_json TEXT,
              apt_analysis_json TEXT,
              photos_json TEXT,

              special_instructions TEXT,
              gas_detection_reading TEXT,
              gas_detection_date TEXT,

              created_by TEXT REFERENCES users(id),
              validated_by TEXT REFERENCES users(id),
              approved_by TEXT REFERENCES users(id),

              validation_comments TEXT,
              approval_comments TEXT,
              rejection_reason TEXT,

              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            -- One row per calendar year; advanced in the same transaction as the permit insert.
            CREATE TABLE IF NOT EXISTS permit_counters (
              year INTEGER PRIMARY KEY,
              last_seq INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS permit_history (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              permit_id TEXT NOT NULL REFERENCES permits(id),
              action TEXT NOT NULL,
              performed_by TEXT NOT NULL,
              comments TEXT,
              timestamp TEXT NOT NULL
            );

            CREATE TRIGGER IF NOT EXISTS permit_history_no_update
            BEFORE UPDATE ON permit_history
            BEGIN
              SELECT RAISE(ABORT, 'permit_history is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS permit_history_no_delete
            BEFORE DELETE ON permit_history
            BEGIN
              SELECT RAISE(ABORT, 'permit_history is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS permits_number_immutable
            BEFORE UPDATE OF permit_number ON permits
            WHEN NEW.permit_number IS NOT OLD.permit_number
            BEGIN
              SELECT RAISE(ABORT, 'permit_number is immutable');
            END;

            CREATE TABLE IF NOT EXISTS export_artifacts (
              id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              filename TEXT NOT NULL,
              path TEXT NOT NULL,
              sha256 TEXT NOT NULL,
              page_count INTEGER NOT NULL,

              permit_id TEXT NOT NULL,
              permit_number TEXT NOT NULL,

              exported_at TEXT NOT NULL,
              exported_by TEXT NOT NULL,
              retention_days INTEGER NOT NULL DEFAULT 30
            );

            CREATE INDEX IF NOT EXISTS idx_permits_status ON permits(status);
            CREATE INDEX IF NOT EXISTS idx_permits_created_at ON permits(created_at);
            CREATE INDEX IF NOT EXISTS idx_permit_history_permit ON permit_history(permit_id, id);
            CREATE INDEX IF NOT EXISTS idx_export_artifacts_permit ON export_artifacts(permit_id);
            """
        )


def init_db(path: str | None = None) -> None:
    path = path or db_path()
    init_db_path(path)
    os.makedirs(exports_dir(), exist_ok=True)

    if os.environ.get("PTW_SEED_DEMO_USERS", "1") != "0":
        with db(path) as conn:
            _seed_demo_users(conn)


@app.on_event("startup")
def _startup() -> None:
    init_db()
    logger.info(f"Permit store ready at {db_path()}")


def utc_now_iso(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _json_load(s: str | None) -> Any:
    return json.loads(s) if s else None


def _json_dump(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def _sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


# --- Auth + RBAC ---

# Demo-friendly local auth:
# - Users live in the permit store.
# - Login issues a server-side session token (cookie, or bearer header for API clients).
# - Roles are not client-controlled.


def _hash_password(password: str, salt_hex: str) -> str:
    pw = (password or "").encode("utf-8")
    salt = bytes.fromhex(salt_hex)
    dk = hashlib.pbkdf2_hmac("sha256", pw, salt, 200_000)
    return dk.hex()


def _verify_password(password: str, salt_hex: str, hash_hex: str) -> bool:
    import hmac

    return hmac.compare_digest(_hash_password(password, salt_hex), hash_hex)


def _new_session_token() -> str:
    import secrets

    return secrets.token_urlsafe(32)


def _is_public_path(path: str) -> bool:
    return path == "/api/login" or not path.startswith("/api/")


def _request_token(request: Request) -> str:
    auth = (request.headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return (request.cookies.get(SESSION_COOKIE) or "").strip()


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.user_id = ""
        request.state.role = ""

        if not _is_public_path(str(request.url.path)):
            token = _request_token(request)
            if token:
                with db() as conn:
                    row = conn.execute(
                        """
                        SELECT u.id, u.role
                        FROM sessions s
                        JOIN users u ON u.id = s.user_id
                        WHERE s.token=? AND s.revoked_at IS NULL AND u.disabled_at IS NULL
                        """,
                        (token,),
                    ).fetchone()
                if row:
                    request.state.user_id = str(row["id"])
                    request.state.role = str(row["role"])

            if not request.state.user_id:
                # Don't raise inside middleware (can produce noisy exception groups).
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        return await call_next(request)


app.add_middleware(AuthMiddleware)


def can(role: str, action: str) -> bool:
    """Small RBAC matrix.

    Ownership and assignment rules (creator submits/edits, the assigned validator
    may validate) are checked where the permit row is at hand.

    Actions:
      - permit:view, permit:create, permit:edit, permit:submit, permit:pdf
      - permit:validate, permit:approve, permit:close
      - users:list, users:create
    """
    if role == "admin":
        return True

    if action in ("permit:view", "permit:create", "permit:edit", "permit:submit", "permit:pdf", "users:list"):
        return role in ("supervisor", "user", "operator")

    if action in ("permit:validate", "permit:approve", "permit:close"):
        return role in ("supervisor",)

    return False


def require(role: str, action: str) -> None:
    if not can(role, action):
        raise HTTPException(status_code=403, detail=f"Forbidden: requires permission {action}")


def _user_dict(row: sqlite3.Row | dict[str, Any]) -> dict[str, Any]:
    r = dict(row)
    return {
        "id": r["id"],
        "email": r["email"],
        "firstName": r["first_name"],
        "lastName": r["last_name"],
        "role": r["role"],
    }


def get_user(conn: sqlite3.Connection, user_id: str | None) -> sqlite3.Row | None:
    if not user_id:
        return None
    return conn.execute(
        "SELECT * FROM users WHERE id=? AND disabled_at IS NULL", (user_id,)
    ).fetchone()


def create_user(
    conn: sqlite3.Connection,
    email: str,
    password: str,
    role: str,
    first_name: str = "",
    last_name: str = "",
    created_by: str = "seed",
    demo_password: str | None = None,
) -> sqlite3.Row:
    import secrets

    email = (email or "").strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="email is required")
    if role not in ROLES:
        raise HTTPException(status_code=400, detail="invalid role")
    if conn.execute("SELECT 1 FROM users WHERE email=?", (email,)).fetchone():
        raise HTTPException(status_code=409, detail="User already exists")

    user_id = str(uuid.uuid4())
    salt = secrets.token_bytes(16).hex()
    conn.execute(
        """
        INSERT INTO users(id, email, first_name, last_name, role, password_salt_hex, password_hash_hex, demo_password, created_at, created_by)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            user_id,
            email,
            first_name.strip(),
            last_name.strip(),
            role,
            salt,
            _hash_password(password, salt),
            demo_password,
            utc_now_iso(),
            created_by,
        ),
    )
    return conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()


DEMO_USERS: list[tuple[str, str, str, str, str]] = [
    # email, password, first name, last name, role
    ("admin@example.com", "admin", "Ana", "Administradora", "admin"),
    ("x@example.com", "secret", "Validador", "Supervisor", "supervisor"),
    ("user@example.com", "user", "Usuario", "Solicitante", "user"),
    ("operator@example.com", "operator", "Oscar", "Operador", "operator"),
]


def _seed_demo_users(conn: sqlite3.Connection) -> None:
    # Demo credentials are intentionally obvious.
    for email, pw, first, last, role in DEMO_USERS:
        row = conn.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone()
        if row:
            # Keep role + demo_password aligned for consistent demos.
            conn.execute(
                "UPDATE users SET role=?, demo_password=?, disabled_at=NULL WHERE email=?",
                (role, pw, email),
            )
            continue
        create_user(conn, email, pw, role, first, last, created_by="seed", demo_password=pw)


# --- Request models ---


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class AptRow(ApiModel):
    work_steps: str = ""
    hazards: str = ""
    threats: str = ""
    barriers: str = ""


class AptParticipant(ApiModel):
    name: str = ""
    signature: str = ""


class AptAnalysis(ApiModel):
    work_activity_name: str = ""
    analysis_leader: str = ""
    apt_rows: list[AptRow] = Field(default_factory=list)
    daily_talk: dict[str, Literal["si", "no", ""]] = Field(default_factory=dict)
    observations: str = ""
    participants: list[AptParticipant] = Field(default_factory=list)


class PermitFields(ApiModel):
    executor_company: str | None = None
    station_duct: str | None = None
    area_site: str | None = None
    work_order_number: str | None = None
    work_description: str | None = None
    work_date: date | None = None
    valid_from: str | None = Field(default=None, pattern=HHMM_PATTERN)
    valid_to: str | None = Field(default=None, pattern=HHMM_PATTERN)
    checklist_responses: dict[str, str] | None = None
    ppe_requirements: list[str] | None = None
    apt_analysis: AptAnalysis | None = None
    photos: list[Annotated[str, Field(pattern=PHOTO_SRC_PATTERN)]] | None = None
    special_instructions: str | None = None
    gas_detection_reading: str | None = None
    gas_detection_date: datetime | None = None

    def column_fields(self) -> dict[str, Any]:
        """Fields the client actually sent, APT kept in its camelCase wire shape."""
        data = self.model_dump(exclude_unset=True, exclude={"comments"})
        if "apt_analysis" in data and self.apt_analysis is not None:
            data["apt_analysis"] = self.apt_analysis.model_dump(by_alias=True)
        return data


class PermitCreate(PermitFields):
    type: PermitKind
    work_date: date


class PermitUpdate(PermitFields):
    type: PermitKind | None = None
    comments: str | None = None


class SubmitRequest(ApiModel):
    validator_id: str | None = None
    comments: str | None = None


class DecisionRequest(ApiModel):
    approved: bool
    comments: str | None = None


class CloseRequest(ApiModel):
    comments: str | None = None


class LoginRequest(ApiModel):
    email: str
    password: str


class UserCreate(ApiModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    first_name: str = ""
    last_name: str = ""
    role: Role = "user"


# --- Permit store ---

JSON_COLUMNS: dict[str, str] = {
    "checklist_responses": "checklist_responses_json",
    "ppe_requirements": "ppe_requirements_json",
    "apt_analysis": "apt_analysis_json",
    "photos": "photos_json",
}


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in fields.items():
        if key in JSON_COLUMNS:
            out[JSON_COLUMNS[key]] = _json_dump(value) if value is not None else None
        elif isinstance(value, (date, datetime)):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def _permit_dict(row: sqlite3.Row | dict[str, Any]) -> dict[str, Any]:
    r = dict(row)
    return {
        "id": r["id"],
        "permitNumber": r["permit_number"],
        "type": r["type"],
        "status": r["status"],
        "executorCompany": r["executor_company"],
        "stationDuct": r["station_duct"],
        "areaSite": r["area_site"],
        "workOrderNumber": r["work_order_number"],
        "workDescription": r["work_description"],
        "workDate": r["work_date"],
        "validFrom": r["valid_from"],
        "validTo": r["valid_to"],
        "checklistResponses": _json_load(r["checklist_responses_json"]) or {},
        "ppeRequirements": _json_load(r["ppe_requirements_json"]) or [],
        "aptAnalysis": _json_load(r["apt_analysis_json"]),
        "photos": _json_load(r["photos_json"]) or [],
        "specialInstructions": r["special_instructions"],
        "gasDetectionReading": r["gas_detection_reading"],
        "gasDetectionDate": r["gas_detection_date"],
        "createdBy": r["created_by"],
        "validatedBy": r["validated_by"],
        "approvedBy": r["approved_by"],
        "validationComments": r["validation_comments"],
        "approvalComments": r["approval_comments"],
        "rejectionReason": r["rejection_reason"],
        "createdAt": r["created_at"],
        "updatedAt": r["updated_at"],
    }


def _history_dict(row: sqlite3.Row | dict[str, Any]) -> dict[str, Any]:
    r = dict(row)
    return {
        "id": int(r["id"]),
        "permitId": r["permit_id"],
        "action": r["action"],
        "performedBy": r["performed_by"],
        "comments": r["comments"],
        "timestamp": r["timestamp"],
    }


def get_permit_row(conn: sqlite3.Connection, permit_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM permits WHERE id=?", (permit_id,)).fetchone()


def _require_permit(conn: sqlite3.Connection, permit_id: str) -> sqlite3.Row:
    row = get_permit_row(conn, permit_id)
    if not row:
        raise HTTPException(status_code=404, detail="Permit not found")
    return row


def add_history(
    conn: sqlite3.Connection,
    permit_id: str,
    action: str,
    performed_by: str,
    comments: str | None = None,
    *,
    now: datetime | None = None,
) -> None:
    """Append a permit_history row.

    Pass the connection that performed the status change so the entry commits
    (or rolls back) together with it.
    """
    if comments is None:
        comments = DEFAULT_HISTORY_COMMENTS.get(action)
    conn.execute(
        "INSERT INTO permit_history(permit_id, action, performed_by, comments, timestamp) VALUES (?,?,?,?,?)",
        (permit_id, action, performed_by, comments, utc_now_iso(now)),
    )


def list_history(conn: sqlite3.Connection, permit_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM permit_history WHERE permit_id=? ORDER BY id ASC", (permit_id,)
    ).fetchall()
    return [_history_dict(r) for r in rows]


def format_permit_number(year: int, seq: int) -> str:
    return f"PT-{year}-{seq:03d}"


def allocate_permit_number(conn: sqlite3.Connection, year: int) -> str:
    """Advance the year's counter and return the next permit number.

    Must run inside the caller's write transaction so the counter and the
    permit insert commit together. A year without a counter row starts from
    the highest number already issued for that year.
    """
    row = conn.execute("SELECT last_seq FROM permit_counters WHERE year=?", (year,)).fetchone()
    if row is None:
        seq = 0
        for r in conn.execute(
            "SELECT permit_number FROM permits WHERE permit_number LIKE ?", (f"PT-{year}-%",)
        ).fetchall():
            m = PERMIT_NUMBER_RE.match(str(r["permit_number"]))
            if m:
                seq = max(seq, int(m.group(2)))
        conn.execute("INSERT INTO permit_counters(year, last_seq) VALUES (?,?)", (year, seq))
    else:
        seq = int(row["last_seq"])

    seq += 1
    conn.execute("UPDATE permit_counters SET last_seq=? WHERE year=?", (seq, year))
    return format_permit_number(year, seq)


def create_permit(
    conn: sqlite3.Connection,
    fields: dict[str, Any],
    actor_id: str,
    *,
    now: datetime | None = None,
) -> sqlite3.Row:
    now = now or datetime.now(timezone.utc)
    ts = utc_now_iso(now)

    conn.execute("BEGIN IMMEDIATE")
    permit_id = str(uuid.uuid4())
    number = allocate_permit_number(conn, now.astimezone(timezone.utc).year)

    values: dict[str, Any] = {
        "id": permit_id,
        "permit_number": number,
        "status": "draft",
        "created_by": actor_id,
        "created_at": ts,
        "updated_at": ts,
    }
    values.update(_column_values(fields))
    values["status"] = "draft"

    cols = ", ".join(values.keys())
    qmarks = ",".join(["?"] * len(values))
    conn.execute(f"INSERT INTO permits({cols}) VALUES ({qmarks})", list(values.values()))
    add_history(conn, permit_id, "created", actor_id, now=now)

    logger.info(f"Permit {number} ({values.get('type')}) created by {actor_id}")
    return _require_permit(conn, permit_id)


def update_permit(
    conn: sqlite3.Connection,
    permit_id: str,
    fields: dict[str, Any],
    actor_id: str,
    role: str,
    comments: str | None = None,
) -> sqlite3.Row:
    conn.execute("BEGIN IMMEDIATE")
    row = _require_permit(conn, permit_id)

    require(role, "permit:edit")
    if role != "admin" and row["created_by"] != actor_id:
        raise HTTPException(status_code=403, detail="Forbidden: only the permit creator can edit it")
    if row["status"] != "draft":
        raise HTTPException(status_code=409, detail="Only draft permits can be edited")
    for required in ("type", "work_date"):
        if required in fields and fields[required] is None:
            raise HTTPException(status_code=400, detail=f"{required} cannot be null")

    values = _column_values(fields)
    values["updated_at"] = utc_now_iso()
    sets = ", ".join(f"{k}=?" for k in values)
    conn.execute(f"UPDATE permits SET {sets} WHERE id=?", [*values.values(), permit_id])
    add_history(conn, permit_id, "updated", actor_id, comments or None)
    return _require_permit(conn, permit_id)


def list_permits(
    conn: sqlite3.Connection,
    status: str | None = None,
    permit_type: str | None = None,
    created_by: str | None = None,
    validated_by: str | None = None,
    approved_by: str | None = None,
) -> list[dict[str, Any]]:
    where: list[str] = []
    params: list[Any] = []
    for col, val in (
        ("status", status),
        ("type", permit_type),
        ("created_by", created_by),
        ("validated_by", validated_by),
        ("approved_by", approved_by),
    ):
        if val:
            where.append(f"{col}=?")
            params.append(val)

    sql = "SELECT * FROM permits"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC, rowid DESC"
    return [_permit_dict(r) for r in conn.execute(sql, params).fetchall()]


# --- Workflow ---


@dataclass(frozen=True)
class Transition:
    """One workflow action.

    Decision actions (validate, approve) carry a second branch taken when the
    reviewer answers `approved=false`.
    """

    action: str
    sources: tuple[Status, ...]
    target: Status
    history_action: str
    reject_sources: tuple[Status, ...] = ()
    reject_target: Status | None = None
    reject_history_action: str | None = None

    def resolve(self, approved: bool) -> tuple[tuple[Status, ...], Status, str]:
        if approved or self.reject_target is None:
            return self.sources, self.target, self.history_action
        return self.reject_sources, self.reject_target, self.reject_history_action or self.history_action


TRANSITIONS: dict[str, Transition] = {
    "submit-for-validation": Transition(
        action="submit-for-validation",
        sources=("draft",),
        target="pending_validation",
        history_action="submitted_for_validation",
    ),
    "validate": Transition(
        action="validate",
        sources=("pending_validation",),
        target="pending_approval",
        history_action="validated",
        reject_sources=OPEN_STATUSES,
        reject_target="rejected",
        reject_history_action="rejected_by_validator",
    ),
    "approve": Transition(
        action="approve",
        sources=("pending_approval",),
        target="approved",
        history_action="approved",
        reject_sources=("pending_approval",),
        reject_target="rejected",
        reject_history_action="rejected_by_supervisor",
    ),
    "close": Transition(
        action="close",
        sources=("approved",),
        target="closed",
        history_action="closed",
    ),
}


def _authorize_transition(action: str, actor_id: str, role: str, row: sqlite3.Row) -> None:
    if action == "submit-for-validation":
        require(role, "permit:submit")
        if role != "admin" and row["created_by"] != actor_id:
            raise HTTPException(
                status_code=403,
                detail="Forbidden: only the permit creator can submit it for validation",
            )
        return

    if action == "validate":
        # The validator assigned at submission may validate regardless of role,
        # but never a permit they created.
        assigned = bool(row["validated_by"]) and row["validated_by"] == actor_id and row["created_by"] != actor_id
        if not (can(role, "permit:validate") or assigned):
            raise HTTPException(status_code=403, detail="Forbidden: requires permission permit:validate")
        return

    require(role, f"permit:{action}")


def apply_transition(
    conn: sqlite3.Connection,
    permit_id: str,
    action: str,
    actor_id: str,
    role: str,
    *,
    approved: bool = True,
    comments: str | None = None,
    validator_id: str | None = None,
) -> sqlite3.Row:
    """Run one workflow action and append its history entry.

    Checks run in order: permit exists (404), caller may act (403), current
    status allows the action (409). The status update is a compare-and-set on
    the status read under the write lock.
    """
    t = TRANSITIONS.get(action)
    if t is None:
        raise HTTPException(status_code=400, detail=f"Unknown workflow action '{action}'")

    conn.execute("BEGIN IMMEDIATE")
    row = _require_permit(conn, permit_id)
    _authorize_transition(action, actor_id, role, row)

    sources, target, history_action = t.resolve(approved)
    current = str(row["status"])
    if current not in sources:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {history_action.replace('_', ' ')} a permit in status '{current}'",
        )

    updates: dict[str, Any] = {"status": target, "updated_at": utc_now_iso()}
    if action == "submit-for-validation":
        updates["validation_comments"] = comments
        if validator_id:
            if validator_id == row["created_by"]:
                raise HTTPException(status_code=400, detail="A permit cannot be validated by its creator")
            if get_user(conn, validator_id) is None:
                raise HTTPException(status_code=400, detail=f"Unknown validator '{validator_id}'")
            updates["validated_by"] = validator_id
    elif action == "validate":
        updates["validated_by"] = actor_id
        updates["validation_comments"] = comments
    elif action == "approve":
        updates["approved_by"] = actor_id
        updates["approval_comments"] = comments
    if target == "rejected":
        updates["rejection_reason"] = comments

    sets = ", ".join(f"{k}=?" for k in updates)
    cur = conn.execute(
        f"UPDATE permits SET {sets} WHERE id=? AND status=?",
        [*updates.values(), permit_id, current],
    )
    if cur.rowcount != 1:
        raise HTTPException(status_code=409, detail="Permit status changed concurrently; reload and retry")

    add_history(conn, permit_id, history_action, actor_id, comments)
    logger.info(f"Permit {row['permit_number']}: {current} -> {target} ({history_action} by {actor_id})")
    return _require_permit(conn, permit_id)


def expire_overdue_permits(
    conn: sqlite3.Connection,
    today: date,
    actor: str = SYSTEM_ACTOR,
) -> list[str]:
    """Move approved permits whose work date is before `today` to expired.

    Returns the permit numbers that expired. Runs in the caller's transaction
    scope; the caller commits.
    """
    conn.execute("BEGIN IMMEDIATE")
    rows = conn.execute(
        """
        SELECT id, permit_number FROM permits
        WHERE status='approved' AND work_date IS NOT NULL AND work_date < ?
        ORDER BY permit_number
        """,
        (today.isoformat(),),
    ).fetchall()

    expired: list[str] = []
    now = utc_now_iso()
    for r in rows:
        cur = conn.execute(
            "UPDATE permits SET status='expired', updated_at=? WHERE id=? AND status='approved'",
            (now, r["id"]),
        )
        if cur.rowcount != 1:
            continue
        add_history(conn, r["id"], "expired", actor)
        expired.append(str(r["permit_number"]))

    if expired:
        logger.info(f"Expired {len(expired)} permit(s): {', '.join(expired)}")
    return expired


def dashboard_stats(conn: sqlite3.Connection, today: date | None = None) -> dict[str, int]:
    today = today or datetime.now(timezone.utc).date()
    day = today.isoformat()

    def count(sql: str, params: tuple[Any, ...] = ()) -> int:
        return int(conn.execute(sql, params).fetchone()["c"])

    pending_q = ",".join(["?"] * len(PENDING_STATUSES))
    return {
        "activePermits": count("SELECT COUNT(*) AS c FROM permits WHERE status='approved'"),
        "pendingPermits": count(
            f"SELECT COUNT(*) AS c FROM permits WHERE status IN ({pending_q})", PENDING_STATUSES
        ),
        "approvedToday": count(
            "SELECT COUNT(*) AS c FROM permits WHERE status='approved' AND substr(updated_at, 1, 10)=?",
            (day,),
        ),
        "expiringToday": count(
            "SELECT COUNT(*) AS c FROM permits WHERE status='approved' AND work_date=?",
            (day,),
        ),
    }


def record_export(
    conn: sqlite3.Connection,
    permit: dict[str, Any],
    pdf_bytes: bytes,
    page_count: int,
    actor_id: str,
) -> str:
    """Write the rendered PDF under the exports dir and ledger it in export_artifacts."""
    os.makedirs(exports_dir(), exist_ok=True)
    export_id = str(uuid.uuid4())
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    filename = f"permiso-{permit['permitNumber']}__{ts}__{export_id[:8]}.pdf"
    out_path = os.path.join(exports_dir(), filename)
    Path(out_path).write_bytes(pdf_bytes)

    conn.execute(
        """
        INSERT INTO export_artifacts(id, kind, filename, path, sha256, page_count, permit_id, permit_number, exported_at, exported_by, retention_days)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            export_id,
            "pdf",
            filename,
            out_path,
            _sha256_bytes(pdf_bytes),
            page_count,
            permit["id"],
            permit["permitNumber"],
            utc_now_iso(),
            actor_id,
            export_retention_days(),
        ),
    )
    return export_id


# --- Routes ---


@app.post("/api/login")
def login(body: LoginRequest):
    email = body.email.strip().lower()
    with db() as conn:
        u = conn.execute(
            "SELECT * FROM users WHERE email=? AND disabled_at IS NULL", (email,)
        ).fetchone()
        if not u or not _verify_password(body.password, str(u["password_salt_hex"]), str(u["password_hash_hex"])):
            logger.warning(f"Failed login for {email!r}")
            raise HTTPException(status_code=401, detail="Invalid credentials")

        token = _new_session_token()
        conn.execute(
            "INSERT INTO sessions(token, user_id, created_at) VALUES (?,?,?)",
            (token, str(u["id"]), utc_now_iso()),
        )

    resp = JSONResponse(content={"user": _user_dict(u), "token": token})
    resp.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="lax")
    return resp


@app.post("/api/logout")
def logout(request: Request):
    token = _request_token(request)
    if token:
        with db() as conn:
            conn.execute(
                "UPDATE sessions SET revoked_at=? WHERE token=? AND revoked_at IS NULL",
                (utc_now_iso(), token),
            )

    resp = JSONResponse(content={"message": "Logged out"})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@app.get("/api/auth/user")
def auth_user(request: Request):
    with db() as conn:
        row = get_user(conn, request.state.user_id)
    if not row:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return _user_dict(row)


@app.get("/api/users")
def users_list(request: Request, role: str | None = None):
    require(request.state.role, "users:list")
    sql = "SELECT * FROM users WHERE disabled_at IS NULL"
    params: list[Any] = []
    if role:
        sql += " AND role=?"
        params.append(role)
    sql += " ORDER BY role ASC, email ASC"
    with db() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_user_dict(r) for r in rows]


@app.post("/api/users")
def users_create(request: Request, body: UserCreate):
    require(request.state.role, "users:create")
    with db() as conn:
        row = create_user(
            conn,
            body.email,
            body.password,
            body.role,
            body.first_name,
            body.last_name,
            created_by=request.state.user_id,
        )
    logger.info(f"User {row['email']} ({row['role']}) created by {request.state.user_id}")
    return _user_dict(row)


@app.get("/api/dashboard/stats")
def dashboard(request: Request):
    with db() as conn:
        return dashboard_stats(conn)


@app.get("/api/permit-types")
def permit_types(request: Request):
    return catalog()


@app.post("/api/permits")
def permits_create(request: Request, body: PermitCreate):
    require(request.state.role, "permit:create")
    with db() as conn:
        row = create_permit(conn, body.column_fields(), request.state.user_id)
        return _permit_dict(row)


@app.get("/api/permits")
def permits_list(
    request: Request,
    status: str | None = None,
    type: str | None = None,
    created_by: str | None = Query(None, alias="createdBy"),
    validated_by: str | None = Query(None, alias="validatedBy"),
    approved_by: str | None = Query(None, alias="approvedBy"),
):
    require(request.state.role, "permit:view")
    with db() as conn:
        return list_permits(
            conn,
            status=status,
            permit_type=type,
            created_by=created_by,
            validated_by=validated_by,
            approved_by=approved_by,
        )


@app.get("/api/permits/{permit_id}")
def permits_get(request: Request, permit_id: str):
    require(request.state.role, "permit:view")
    with db() as conn:
        return _permit_dict(_require_permit(conn, permit_id))


@app.patch("/api/permits/{permit_id}")
def permits_update(request: Request, permit_id: str, body: PermitUpdate):
    with db() as conn:
        row = update_permit(
            conn,
            permit_id,
            body.column_fields(),
            request.state.user_id,
            request.state.role,
            comments=body.comments,
        )
        return _permit_dict(row)


@app.post("/api/permits/{permit_id}/submit-for-validation")
def permits_submit(request: Request, permit_id: str, body: SubmitRequest | None = None):
    body = body or SubmitRequest()
    with db() as conn:
        row = apply_transition(
            conn,
            permit_id,
            "submit-for-validation",
            request.state.user_id,
            request.state.role,
            comments=body.comments,
            validator_id=(body.validator_id or "").strip() or None,
        )
        return _permit_dict(row)


@app.post("/api/permits/{permit_id}/validate")
def permits_validate(request: Request, permit_id: str, body: DecisionRequest):
    with db() as conn:
        row = apply_transition(
            conn,
            permit_id,
            "validate",
            request.state.user_id,
            request.state.role,
            approved=body.approved,
            comments=body.comments,
        )
        return _permit_dict(row)


@app.post("/api/permits/{permit_id}/approve")
def permits_approve(request: Request, permit_id: str, body: DecisionRequest):
    with db() as conn:
        row = apply_transition(
            conn,
            permit_id,
            "approve",
            request.state.user_id,
            request.state.role,
            approved=body.approved,
            comments=body.comments,
        )
        return _permit_dict(row)


@app.post("/api/permits/{permit_id}/close")
def permits_close(request: Request, permit_id: str, body: CloseRequest | None = None):
    body = body or CloseRequest()
    with db() as conn:
        row = apply_transition(
            conn,
            permit_id,
            "close",
            request.state.user_id,
            request.state.role,
            comments=body.comments,
        )
        return _permit_dict(row)


@app.get("/api/permits/{permit_id}/history")
def permits_history(request: Request, permit_id: str):
    require(request.state.role, "permit:view")
    with db() as conn:
        _require_permit(conn, permit_id)
        return list_history(conn, permit_id)


@app.get("/api/permits/{permit_id}/pdf")
def permits_pdf(request: Request, permit_id: str):
    """Render the printable permit document.

    Every rendered document is kept under the exports dir and ledgered in
    export_artifacts (see ops/cleanup_exports.py for retention).
    """
    require(request.state.role, "permit:pdf")
    actor = request.state.user_id

    with db() as conn:
        permit = _permit_dict(_require_permit(conn, permit_id))
        people: dict[str, dict[str, Any] | None] = {}
        for slot in ("createdBy", "validatedBy", "approvedBy"):
            u = get_user(conn, permit[slot])
            people[slot] = _user_dict(u) if u else None
        history = list_history(conn, permit_id)

    html = render_permit_html(permit, people, history)
    renderer: PdfRenderer = request.app.state.pdf_renderer
    try:
        pdf_bytes = renderer.render(html)
        page_count = pdf_page_count(pdf_bytes)
    except Exception as e:
        logger.exception(f"PDF generation failed for {permit['permitNumber']}")
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from e

    with db() as conn:
        record_export(conn, permit, pdf_bytes, page_count, actor)

    logger.info(f"PDF for {permit['permitNumber']} rendered ({page_count} page(s)) for {actor}")
    filename = f"permiso-{permit['permitNumber']}.pdf"
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
