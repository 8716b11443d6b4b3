"""
Invoice and receipt PDFs.

Files are written to settings.pdf_temp_dir and removed by the caller with
cleanup() once sent.
"""
from __future__ import annotations

import io
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import qrcode
import qrcode.constants
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from quickvoicy.core.config import settings
from quickvoicy.db.models import Invoice

logger = logging.getLogger(__name__)

BRAND_NAME = "Quickvoicy"
BRAND_COLOR = colors.HexColor("#FFC107")
PAID_HEX = "#2E7D32"
PENDING_HEX = "#C62828"


def _temp_dir() -> Path:
    path = Path(settings.pdf_temp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _temp_path(kind: str, invoice: Invoice) -> Path:
    # one file per render; concurrent sends of the same invoice must not share it
    return _temp_dir() / f"{kind}-{invoice.id}-{uuid.uuid4().hex[:8]}.pdf"


def download_name(invoice: Invoice, receipt: bool = False) -> str:
    """File name shown to the recipient."""
    return f"{'receipt' if receipt else 'invoice'}-{invoice.short_id}.pdf"


def _fmt_date(value: datetime | None) -> str:
    if value is None:
        return "-"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime("%B %d, %Y")


def _escape(text: str | None) -> str:
    return (text or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def qr_png(data: str) -> io.BytesIO:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(data.upper() if data.lower().startswith("lnbc") else data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return buf


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "Title", parent=base["Heading1"], fontSize=24, textColor=BRAND_COLOR, spaceAfter=6
        ),
        "heading": ParagraphStyle("Heading", parent=base["Heading2"], fontSize=14, spaceBefore=12),
        "body": ParagraphStyle("Body", parent=base["Normal"], fontSize=11, leading=14),
        "small": ParagraphStyle(
            "Small", parent=base["Normal"], fontSize=8, leading=10, alignment=TA_CENTER
        ),
    }


def _details_table(rows: list[list[str]]) -> Table:
    table = Table(rows, colWidths=[1.8 * inch, 4.2 * inch])
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("BACKGROUND", (0, 0), (-1, -1), colors.HexColor("#F8F9FA")),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#E9ECEF")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LEFTPADDING", (0, 0), (-1, -1), 8),
                ("TOPPADDING", (0, 0), (-1, -1), 6),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
            ]
        )
    )
    return table


def _build(path: Path, story: list) -> Path:
    doc = SimpleDocTemplate(
        str(path),
        pagesize=A4,
        leftMargin=0.8 * inch,
        rightMargin=0.8 * inch,
        topMargin=0.8 * inch,
        bottomMargin=0.8 * inch,
        title=f"{BRAND_NAME} {path.stem}",
    )
    doc.build(story)
    logger.info("Rendered %s", path)
    return path


def render_invoice_pdf(invoice: Invoice) -> Path:
    """Render an invoice with a QR code of its payment request. Returns the file path."""
    s = _styles()
    status_color = PAID_HEX if invoice.is_paid else PENDING_HEX

    story = [
        Paragraph(BRAND_NAME, s["title"]),
        Paragraph(f"Invoice #{_escape(invoice.id)}", s["body"]),
        Paragraph(f"Date: {_fmt_date(invoice.created_at)}", s["body"]),
        Spacer(1, 12),
        Paragraph("Bill To", s["heading"]),
        Paragraph(_escape(invoice.client_name) or "-", s["body"]),
    ]
    if invoice.client_email:
        story.append(Paragraph(_escape(invoice.client_email), s["body"]))

    story += [
        Spacer(1, 8),
        _details_table([
            ["Description", Paragraph(_escape(invoice.description), s["body"])],
            ["Amount", f"{invoice.amount:,} sats"],
        ]),
        Spacer(1, 12),
    ]

    if invoice.wallet_invoice and not invoice.is_paid:
        story += [
            Image(qr_png(invoice.wallet_invoice), width=2.2 * inch, height=2.2 * inch),
            Paragraph("Scan to pay with Lightning", s["small"]),
            Spacer(1, 6),
            Paragraph(_escape(invoice.wallet_invoice), s["small"]),
            Spacer(1, 12),
        ]

    story.append(
        Paragraph(
            f'<font color="{status_color}">'
            f"<b>Status: {invoice.status.upper()}</b></font>",
            s["heading"],
        )
    )
    return _build(_temp_path("invoice", invoice), story)


def render_receipt_pdf(invoice: Invoice) -> Path:
    """Render a payment receipt. Only paid invoices have one."""
    if not invoice.is_paid:
        raise ValueError(f"invoice {invoice.id} is not paid")
    s = _styles()
    story = [
        Paragraph(f"{BRAND_NAME} Receipt", s["title"]),
        Paragraph(f"Receipt for invoice #{_escape(invoice.id)}", s["body"]),
        Spacer(1, 12),
        _details_table([
            ["Client", invoice.client_name or "-"],
            ["Description", Paragraph(_escape(invoice.description), s["body"])],
            ["Amount paid", f"{invoice.amount:,} sats"],
            ["Issued", _fmt_date(invoice.created_at)],
            ["Paid", _fmt_date(invoice.paid_at)],
        ]),
        Spacer(1, 12),
        Paragraph("Thank you for your payment.", s["body"]),
    ]
    return _build(_temp_path("receipt", invoice), story)


def cleanup(path: Path | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
