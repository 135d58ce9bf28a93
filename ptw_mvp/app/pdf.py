"""Printable permit documents.

HTML comes from the `permit_pdf.html` Jinja2 template; a headless Chromium
(Playwright) prints it to PDF. The renderer is attached to `app.state` so it can
be swapped (tests use an in-memory fake).
"""

from __future__ import annotations

import asyncio
import io
import os
from datetime import datetime, timezone
from typing import Any, Protocol

from fastapi.templating import Jinja2Templates
from loguru import logger
from playwright.async_api import async_playwright
from pypdf import PdfReader

from .permit_types import APT_DAILY_TOPICS, permit_type_config

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
templates = Jinja2Templates(directory=TEMPLATES_DIR)

STATUS_LABELS: dict[str, str] = {
    "draft": "Borrador",
    "pending_validation": "Pendiente de validación",
    "pending_approval": "Pendiente de aprobación",
    "approved": "Aprobado",
    "rejected": "Rechazado",
    "expired": "Vencido",
    "closed": "Cerrado",
}

PDF_MARGINS = {"top": "20mm", "right": "15mm", "bottom": "20mm", "left": "15mm"}


class PdfRenderer(Protocol):
    def render(self, html: str) -> bytes: ...


def _person_name(user: dict[str, Any] | None) -> str:
    if not user:
        return ""
    name = f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip()
    return name or str(user.get("email") or "")


def render_permit_html(
    permit: dict[str, Any],
    people: dict[str, dict[str, Any] | None],
    history: list[dict[str, Any]],
    now: datetime | None = None,
) -> str:
    """Render the printable HTML for a permit.

    `people` maps the role slots (`createdBy`, `validatedBy`, `approvedBy`) to
    user dicts (or None when the slot is empty).
    """
    now = now or datetime.now(timezone.utc)
    cfg = permit_type_config(str(permit["type"]))
    apt = permit.get("aptAnalysis") or None

    tmpl = templates.get_template("permit_pdf.html")
    return tmpl.render(
        permit=permit,
        type_cfg=cfg,
        status_label=STATUS_LABELS.get(str(permit.get("status")), str(permit.get("status"))),
        creator=_person_name(people.get("createdBy")),
        validator=_person_name(people.get("validatedBy")),
        approver=_person_name(people.get("approvedBy")),
        apt=apt,
        apt_topics=APT_DAILY_TOPICS,
        history=history,
        generated_at=now.strftime("%d/%m/%Y %H:%M UTC"),
    )


def pdf_page_count(pdf_bytes: bytes) -> int:
    """Return the page count, raising ValueError if the bytes are not a readable PDF."""
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        pages = len(reader.pages)
    except Exception as e:
        raise ValueError(f"Unreadable PDF: {e}") from e
    if pages < 1:
        raise ValueError("Rendered PDF has no pages")
    return pages


class PlaywrightPdfRenderer:
    """Print HTML to PDF with headless Chromium."""

    def __init__(self, timeout_ms: int | None = None, headless: bool = True):
        self.timeout_ms = timeout_ms or int(os.environ.get("PTW_PDF_TIMEOUT_MS", "30000"))
        self.headless = headless

    def render(self, html: str) -> bytes:
        # Sync FastAPI routes run in a worker thread with no event loop.
        try:
            return asyncio.run(self.render_async(html))
        except RuntimeError as exc:
            if "asyncio.run() cannot be called from a running event loop" in str(exc):
                raise RuntimeError(
                    "render() cannot be called from an active event loop; "
                    "use `await render_async(html)` instead."
                ) from exc
            raise

    async def render_async(self, html: str) -> bytes:
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(
                headless=self.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
            try:
                page = await browser.new_page()
                page.set_default_timeout(self.timeout_ms)
                await page.set_content(html, wait_until="networkidle")
                pdf = await page.pdf(format="A4", print_background=True, margin=PDF_MARGINS)
                logger.debug(f"Rendered PDF ({len(pdf)} bytes)")
                return pdf
            finally:
                await browser.close()
