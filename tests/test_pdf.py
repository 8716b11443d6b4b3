"""
Invoice and receipt PDF rendering.
"""
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest

from quickvoicy.core.config import settings
from quickvoicy.db.models import STATUS_PAID, STATUS_PENDING, Invoice
from quickvoicy.services import pdf


def _invoice(status=STATUS_PENDING, **kw) -> Invoice:
    return Invoice(
        id=str(uuid.uuid4()),
        user_id=1,
        amount=kw.get("amount", 12345),
        description=kw.get("description", "Website <development> & hosting"),
        client_name=kw.get("client_name", "Jane & Co"),
        client_email=kw.get("client_email", "jane@example.com"),
        status=status,
        wallet_invoice="lnbc123450n1pjfakeinvoicedata",
        payment_hash="ab" * 32,
        created_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        paid_at=datetime(2026, 3, 2, tzinfo=timezone.utc) if status == STATUS_PAID else None,
    )


class TestRender:
    def test_invoice_pdf_written_to_temp_dir(self):
        invoice = _invoice()
        path = pdf.render_invoice_pdf(invoice)

        assert path.parent == Path(settings.pdf_temp_dir)
        assert path.name.startswith(f"invoice-{invoice.id}-")
        assert path.read_bytes().startswith(b"%PDF")

    def test_paid_invoice_pdf(self):
        path = pdf.render_invoice_pdf(_invoice(status=STATUS_PAID, client_email=None))
        assert path.stat().st_size > 0

    def test_receipt_requires_paid_invoice(self):
        with pytest.raises(ValueError):
            pdf.render_receipt_pdf(_invoice())

    def test_receipt_pdf(self):
        invoice = _invoice(status=STATUS_PAID)
        path = pdf.render_receipt_pdf(invoice)
        assert path.name.startswith(f"receipt-{invoice.id}-")
        assert path.read_bytes().startswith(b"%PDF")

    def test_each_render_gets_its_own_file(self):
        invoice = _invoice()
        first = pdf.render_invoice_pdf(invoice)
        second = pdf.render_invoice_pdf(invoice)

        assert first != second
        pdf.cleanup(first)
        assert not first.exists()
        assert second.read_bytes().startswith(b"%PDF")

    def test_download_name(self):
        invoice = _invoice(status=STATUS_PAID)
        assert pdf.download_name(invoice) == f"invoice-{invoice.short_id}.pdf"
        assert pdf.download_name(invoice, receipt=True) == f"receipt-{invoice.short_id}.pdf"

    def test_qr_png(self):
        buf = pdf.qr_png("lnbc1fake")
        assert buf.getvalue().startswith(b"\x89PNG")


class TestCleanup:
    def test_removes_file(self):
        path = pdf.render_invoice_pdf(_invoice())
        pdf.cleanup(path)
        assert not path.exists()

    def test_missing_file_is_fine(self, tmp_path):
        pdf.cleanup(tmp_path / "gone.pdf")
