"""
HTTP API routes.
"""
import pytest
from fastapi.testclient import TestClient

from quickvoicy.api.dependencies import get_store
from quickvoicy.core.config import settings
from quickvoicy.db.models import STATUS_PAID
from quickvoicy.main import app


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def invoice(store, make_invoice):
    user = store.get_or_create_user("telegram", "42")
    return make_invoice(user.id, amount=4200, description="Audit")


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}


class TestInvoices:
    def test_get_invoice(self, client, invoice):
        resp = client.get(f"/api/invoices/{invoice.id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == invoice.id
        assert data["amount"] == 4200
        assert data["status"] == "pending"
        assert data["paidAt"] is None

    def test_unknown_invoice(self, client):
        assert client.get("/api/invoices/nope").status_code == 404

    def test_list_user_invoices(self, client, invoice):
        resp = client.get("/api/users/telegram/42/invoices")
        assert resp.status_code == 200
        assert [i["id"] for i in resp.json()["items"]] == [invoice.id]

    def test_list_unknown_user(self, client):
        assert client.get("/api/users/telegram/999/invoices").status_code == 404
        assert client.get("/api/users/myspace/42/invoices").status_code == 404

    def test_stats(self, client, store, invoice):
        store.set_invoice_status(invoice.id, STATUS_PAID)
        data = client.get("/api/users/telegram/42/stats").json()
        assert data == {
            "totalInvoices": 1,
            "paidInvoices": 1,
            "pendingInvoices": 0,
            "totalEarned": 4200,
            "successRate": 100,
        }

    def test_stats_for_unknown_user_are_zero(self, client):
        assert client.get("/api/users/discord/1/stats").json()["totalInvoices"] == 0

    def test_pdf_is_served_and_removed(self, client, invoice, tmp_path):
        resp = client.get(f"/api/invoices/{invoice.id}/pdf")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/pdf"
        assert resp.content.startswith(b"%PDF")
        assert f"invoice-{invoice.short_id}.pdf" in resp.headers["content-disposition"]
        assert list((tmp_path / "pdf").glob("*.pdf")) == []

    def test_receipt_for_unpaid_invoice(self, client, invoice):
        assert client.get(f"/api/invoices/{invoice.id}/pdf?receipt=true").status_code == 409


class TestInternalSecret:
    def test_required_when_configured(self, client, invoice, monkeypatch):
        monkeypatch.setattr(settings, "internal_secret", "s3cret")

        assert client.get(f"/api/invoices/{invoice.id}").status_code == 403
        assert client.get(f"/api/invoices/{invoice.id}", headers={"X-Internal-Secret": "wrong"}).status_code == 403
        ok = client.get(f"/api/invoices/{invoice.id}", headers={"X-Internal-Secret": "s3cret"})
        assert ok.status_code == 200

    def test_health_is_open(self, client, monkeypatch):
        monkeypatch.setattr(settings, "internal_secret", "s3cret")
        assert client.get("/health").status_code == 200
