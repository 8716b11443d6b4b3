"""
Invoice commands shared by the Telegram bot, the Discord bot and the API.

Store calls are synchronous; they run in a worker thread so chat handlers
never block the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from quickvoicy.core.errors import NotFoundError, WalletNotConnectedError
from quickvoicy.db.models import STATUS_PAID, STATUS_PENDING, Invoice, User
from quickvoicy.db.store import InvoiceStore, UserStats, store as default_store
from quickvoicy.services.nwc import NWCClient

logger = logging.getLogger(__name__)

MAX_AMOUNT_SATS = 21_000_000 * 100_000_000
MAX_DESCRIPTION_LEN = 500
# short ids are shown with 8 chars
MIN_PREFIX_LEN = 8

_NEW_COMMAND_RE = re.compile(r'^\s*(\d+)\s+["“](.+?)["”]\s*$', re.S)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Quick templates offered in chat: (amount, description)
TEMPLATES = {
    "webdev": (10_000, "Website development project"),
    "design": (5_000, "Design services"),
    "consulting": (2_000, "Consulting services"),
}


def parse_new_command(text: str) -> tuple[int, str]:
    """Parse `<amount> "<description>"`. Raises ValueError on bad input."""
    m = _NEW_COMMAND_RE.match(text or "")
    if not m:
        raise ValueError('use: <amount> "<description>"')
    amount = validate_amount(m.group(1))
    description = m.group(2).strip()
    if not description:
        raise ValueError("description must not be empty")
    if len(description) > MAX_DESCRIPTION_LEN:
        raise ValueError(f"description is longer than {MAX_DESCRIPTION_LEN} characters")
    return amount, description


def validate_amount(raw: str | int) -> int:
    try:
        amount = int(str(raw).strip().replace(",", "").replace("_", ""))
    except ValueError:
        raise ValueError("amount must be a whole number of sats") from None
    if amount <= 0:
        raise ValueError("amount must be positive")
    if amount > MAX_AMOUNT_SATS:
        raise ValueError("amount is too large")
    return amount


def normalize_email(raw: str | None) -> str | None:
    """Empty or 'skip' means no email. Raises ValueError for malformed addresses."""
    value = (raw or "").strip()
    if not value or value.lower() == "skip":
        return None
    if not _EMAIL_RE.match(value):
        raise ValueError("that does not look like an email address")
    return value


class InvoiceService:
    def __init__(
        self,
        store: InvoiceStore | None = None,
        wallet_factory: Callable[[str], NWCClient] = NWCClient,
    ):
        self.store = store or default_store
        self.wallet_factory = wallet_factory

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def ensure_user(self, platform: str, platform_id: str) -> User:
        return await self._run(self.store.get_or_create_user, platform, str(platform_id))

    async def connect_wallet(self, platform: str, platform_id: str, uri: str) -> User:
        """Check the wallet answers, then store the URI. WalletConnectionError surfaces."""
        wallet = self.wallet_factory(uri.strip())
        try:
            await wallet.connect()
        finally:
            await wallet.disconnect()
        user = await self.ensure_user(platform, platform_id)
        await self._run(self.store.set_wallet_credential, user.id, uri.strip())
        logger.info("Wallet connected for %s:%s", platform, platform_id)
        return await self._run(self.store.get_user_by_id, user.id)

    async def disconnect_wallet(self, platform: str, platform_id: str) -> None:
        user = await self.ensure_user(platform, platform_id)
        await self._run(self.store.set_wallet_credential, user.id, None)
        logger.info("Wallet disconnected for %s:%s", platform, platform_id)

    async def create_invoice(
        self,
        platform: str,
        platform_id: str,
        amount: int,
        description: str,
        client_name: str = "",
        client_email: str | None = None,
    ) -> Invoice:
        """Create a Lightning invoice in the user's wallet and store it."""
        amount = validate_amount(amount)
        user = await self.ensure_user(platform, platform_id)
        if not user.wallet_credential:
            raise WalletNotConnectedError("connect a wallet first")

        async with self.wallet_factory(user.wallet_credential) as wallet:
            made = await wallet.create_invoice(amount, description)

        invoice = Invoice(
            id=str(uuid.uuid4()),
            user_id=user.id,
            amount=amount,
            description=description,
            client_name=(client_name or "").strip(),
            client_email=client_email,
            status=STATUS_PENDING,
            wallet_invoice=made.invoice,
            payment_hash=made.payment_hash,
            created_at=datetime.now(timezone.utc),
        )
        await self._run(self.store.create_invoice, invoice)
        if not invoice.payment_hash:
            logger.warning("Invoice %s created without payment hash; it will not be auto-checked", invoice.id)
        logger.info("Invoice %s created for user %s (%s sats)", invoice.id, user.id, amount)
        return invoice

    async def get_owned_invoice(self, platform: str, platform_id: str, invoice_ref: str) -> Invoice:
        """Full id or the short prefix shown in chat. NotFoundError for anyone but the owner."""
        user = await self._run(self.store.get_user_by_platform_identity, platform, str(platform_id))
        if user is None:
            raise NotFoundError("invoice not found")
        ref = (invoice_ref or "").strip().lstrip("#")
        invoice = await self._run(self.store.get_invoice, ref) if ref else None
        if invoice is None and len(ref) >= MIN_PREFIX_LEN:
            invoice = await self._run(self.store.find_user_invoice_by_prefix, user.id, ref)
        if invoice is None or invoice.user_id != user.id:
            raise NotFoundError("invoice not found")
        return invoice

    async def check_invoice(self, platform: str, platform_id: str, invoice_ref: str) -> tuple[Invoice, bool]:
        """
        On-demand settlement check. Returns (invoice, transitioned).

        Uses the same one-way store transition as the monitor, so an invoice
        paid here is never reported again by the monitor.
        """
        invoice = await self.get_owned_invoice(platform, platform_id, invoice_ref)
        if invoice.is_paid or not invoice.payment_hash:
            return invoice, False
        user = await self._run(self.store.get_user_by_id, invoice.user_id)
        if not user or not user.wallet_credential:
            raise WalletNotConnectedError("connect a wallet first")

        async with self.wallet_factory(user.wallet_credential) as wallet:
            is_paid = await wallet.check_payment_status(invoice.payment_hash)
        if not is_paid:
            return invoice, False

        transitioned = await self._run(
            self.store.set_invoice_status, invoice.id, STATUS_PAID, datetime.now(timezone.utc)
        )
        refreshed = await self._run(self.store.get_invoice, invoice.id)
        return refreshed or invoice, transitioned

    async def delete_invoice(self, platform: str, platform_id: str, invoice_ref: str) -> Invoice:
        invoice = await self.get_owned_invoice(platform, platform_id, invoice_ref)
        deleted = await self._run(self.store.delete_invoice, invoice.id, invoice.user_id)
        if not deleted:
            raise NotFoundError("invoice not found")
        logger.info("Invoice %s deleted by owner", invoice.id)
        return invoice

    async def list_invoices(self, platform: str, platform_id: str, limit: int = 10) -> list[Invoice]:
        user = await self._run(self.store.get_user_by_platform_identity, platform, str(platform_id))
        if user is None:
            return []
        return await self._run(self.store.list_invoices_for_user, user.id, limit)

    async def user_stats(self, platform: str, platform_id: str) -> UserStats:
        user = await self._run(self.store.get_user_by_platform_identity, platform, str(platform_id))
        if user is None:
            return UserStats(0, 0, 0)
        return await self._run(self.store.compute_user_stats, user.id)


invoice_service = InvoiceService()
