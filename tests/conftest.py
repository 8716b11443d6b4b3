"""
Shared fixtures: a throwaway SQLite store per test, plus in-memory fakes for
the wallet client and the chat notifier.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from quickvoicy.core.config import settings
from quickvoicy.core.errors import WalletConnectionError
from quickvoicy.db.models import STATUS_PENDING, Invoice
from quickvoicy.db.session import init_db, make_engine, make_session_factory
from quickvoicy.db.store import InvoiceStore
from quickvoicy.services.nwc import WalletInvoice


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return InvoiceStore(make_session_factory(engine))


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "pdf_temp_dir", str(tmp_path / "pdf"))
    monkeypatch.setattr(settings, "tg_bot_token", "")
    monkeypatch.setattr(settings, "discord_bot_token", "")
    monkeypatch.setattr(settings, "internal_secret", "")


class FakeWallet:
    """
    Stand-in for NWCClient. Behaviour is driven by the shared backend, so
    every client built from the same credential sees the same wallet.
    """

    def __init__(self, credential: str, backend: "FakeWalletBackend"):
        self.credential = credential
        self.backend = backend
        self.connected = False

    async def connect(self):
        self.backend.connects += 1
        if self.credential in self.backend.unreachable:
            raise WalletConnectionError("relay unreachable")
        self.connected = True

    async def disconnect(self):
        self.backend.disconnects += 1
        self.connected = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.disconnect()

    async def create_invoice(self, amount, description):
        self.backend.created.append((self.credential, amount, description))
        payment_hash = uuid.uuid4().hex + uuid.uuid4().hex
        return WalletInvoice(invoice=f"lnbc{amount}n1fake{payment_hash[:10]}", payment_hash=payment_hash)

    async def check_payment_status(self, payment_hash):
        self.backend.lookups.append(payment_hash)
        if self.credential in self.backend.hang:
            await asyncio.sleep(3600)
        if self.backend.lookup_delay:
            await asyncio.sleep(self.backend.lookup_delay)
        if payment_hash in self.backend.lookup_errors:
            raise RuntimeError("lookup exploded")
        return payment_hash in self.backend.settled


class FakeWalletBackend:
    def __init__(self):
        self.settled: set[str] = set()
        self.unreachable: set[str] = set()
        self.hang: set[str] = set()
        self.lookup_errors: set[str] = set()
        self.lookup_delay = 0.0
        self.created: list[tuple] = []
        self.lookups: list[str] = []
        self.connects = 0
        self.disconnects = 0

    def factory(self, credential: str) -> FakeWallet:
        return FakeWallet(credential, self)


class FakeNotifier:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail
        self.delay = delay

    async def __call__(self, platform, platform_id, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((platform, platform_id, text))
        if self.fail:
            raise RuntimeError("chat API down")
        return True


@pytest.fixture
def wallets():
    return FakeWalletBackend()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_invoice(store):
    """Insert a pending invoice for a user; returns the stored Invoice."""

    def _make(user_id: int, amount: int = 1000, payment_hash: str | None = "auto", **kw) -> Invoice:
        if payment_hash == "auto":
            payment_hash = uuid.uuid4().hex + uuid.uuid4().hex
        invoice = Invoice(
            id=kw.pop("id", str(uuid.uuid4())),
            user_id=user_id,
            amount=amount,
            description=kw.pop("description", "Test work"),
            client_name=kw.pop("client_name", "Client"),
            client_email=kw.pop("client_email", None),
            status=STATUS_PENDING,
            wallet_invoice=kw.pop("wallet_invoice", "lnbc10u1fakeinvoice"),
            payment_hash=payment_hash,
            created_at=kw.pop("created_at", datetime.now(timezone.utc)),
        )
        store.create_invoice(invoice)
        return store.get_invoice(invoice.id)

    return _make


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def slow_notifier():
    return FakeNotifier(delay=0.6)
