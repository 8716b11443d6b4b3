"""
Pending payment monitor.

Each tick lists pending invoices, asks the owner's wallet whether the invoice
settled and marks it paid. An invoice only moves pending -> paid once; the
owner gets one notification for that transition.

Failures are per invoice: an unreachable wallet, a lookup error or a timeout
leave the invoice pending and it is checked again next tick.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from quickvoicy.core.config import settings
from quickvoicy.core.errors import NotFoundError, WalletConnectionError
from quickvoicy.db.models import STATUS_PAID, Invoice, User
from quickvoicy.db.store import InvoiceStore, store as default_store
from quickvoicy.services.notifier import notify, payment_received_text
from quickvoicy.services.nwc import NWCClient

logger = logging.getLogger(__name__)

PAID = "paid"
PENDING = "pending"
SKIPPED = "skipped"
FAILED = "failed"

Notifier = Callable[[str, str, str], Awaitable[bool]]


@dataclass
class TickResult:
    checked: int = 0
    paid: int = 0
    pending: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: str) -> None:
        self.checked += 1
        setattr(self, outcome, getattr(self, outcome) + 1)


class PaymentMonitor:
    def __init__(
        self,
        store: InvoiceStore | None = None,
        wallet_factory: Callable[[str], NWCClient] = NWCClient,
        notifier: Notifier = notify,
        concurrency: int | None = None,
        invoice_timeout: float | None = None,
    ):
        self.store = store or default_store
        self.wallet_factory = wallet_factory
        self.notifier = notifier
        self.concurrency = max(1, concurrency or settings.monitor_concurrency)
        self.invoice_timeout = invoice_timeout or settings.invoice_check_timeout_sec
        self._tick_lock = asyncio.Lock()

    async def check_pending_invoices(self) -> TickResult:
        """Run one reconciliation pass. Never raises."""
        result = TickResult()
        if self._tick_lock.locked():
            logger.warning("Previous payment check still running, skipping this tick")
            return result

        async with self._tick_lock:
            try:
                pending = await asyncio.to_thread(self.store.list_pending_invoices)
            except Exception as e:
                logger.error("Payment monitor: failed to list pending invoices: %s", e)
                return result

            # one task per invoice id
            invoices = list({inv.id: inv for inv in pending}.values())
            if not invoices:
                return result

            sem = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(*(self._guarded(inv, sem) for inv in invoices))
            for outcome in outcomes:
                result.add(outcome)

        logger.info(
            "Payment check: %s checked, %s paid, %s pending, %s skipped, %s failed",
            result.checked, result.paid, result.pending, result.skipped, result.failed,
        )
        return result

    async def _guarded(self, invoice: Invoice, sem: asyncio.Semaphore) -> str:
        async with sem:
            try:
                return await self.process_invoice(invoice)
            except Exception as e:
                logger.exception("Invoice %s: check failed: %s", invoice.short_id, e)
                return FAILED

    async def process_invoice(self, invoice: Invoice) -> str:
        if not invoice.payment_hash:
            logger.debug("Invoice %s has no payment hash, not reconcilable", invoice.short_id)
            return SKIPPED

        user = await asyncio.to_thread(self.store.get_user_by_id, invoice.user_id)
        if user is None or not user.wallet_credential:
            logger.warning("Invoice %s: owner %s has no wallet connected, skipping", invoice.short_id, invoice.user_id)
            return SKIPPED

        # Deadline covers the wallet round-trip only, not the paid transition
        try:
            is_paid = await asyncio.wait_for(self._query_wallet(invoice, user), timeout=self.invoice_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Invoice %s: wallet did not answer in %.0fs, retrying next tick",
                invoice.short_id, self.invoice_timeout,
            )
            return SKIPPED

        if is_paid is None:
            return SKIPPED
        if not is_paid:
            return PENDING
        return await self._mark_paid(invoice, user)

    async def _query_wallet(self, invoice: Invoice, user: User) -> bool | None:
        """Settled flag from the owner's wallet, or None when the wallet is unusable."""
        try:
            wallet = self.wallet_factory(user.wallet_credential)
        except WalletConnectionError as e:
            logger.warning("Invoice %s: owner %s wallet URI unusable: %s", invoice.short_id, user.id, e)
            return None

        try:
            try:
                await wallet.connect()
            except WalletConnectionError as e:
                logger.warning("Invoice %s: wallet connect failed: %s", invoice.short_id, e)
                return None
            try:
                return await wallet.check_payment_status(invoice.payment_hash)
            except Exception as e:
                logger.warning("Invoice %s: payment lookup failed: %s", invoice.short_id, e)
                return False
        finally:
            await self._disconnect(wallet, invoice)

    async def _mark_paid(self, invoice: Invoice, user: User) -> str:
        try:
            transitioned = await asyncio.to_thread(
                self.store.set_invoice_status, invoice.id, STATUS_PAID, datetime.now(timezone.utc)
            )
        except NotFoundError:
            logger.info("Invoice %s was deleted before it could be marked paid", invoice.short_id)
            return SKIPPED

        if not transitioned:
            # already paid through an on-demand /check
            return SKIPPED

        logger.info("Invoice %s marked as paid (%s sats)", invoice.id, invoice.amount)
        text = payment_received_text(user.platform, invoice.amount, invoice.description, invoice.short_id)
        try:
            await self.notifier(user.platform, user.platform_id, text)
        except Exception as e:
            logger.warning("Invoice %s: payment notification failed: %s", invoice.short_id, e)
        return PAID

    @staticmethod
    async def _disconnect(wallet, invoice: Invoice) -> None:
        try:
            await wallet.disconnect()
        except Exception as e:
            logger.warning("Invoice %s: wallet disconnect failed: %s", invoice.short_id, e)


monitor = PaymentMonitor()


async def check_pending_invoices() -> TickResult:
    """Scheduler job entry point."""
    return await monitor.check_pending_invoices()
