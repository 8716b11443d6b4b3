"""
Payment monitor: per-tick reconciliation of pending invoices against wallets.
"""
import asyncio

import pytest

from quickvoicy.core.errors import WalletConnectionError
from quickvoicy.db.models import STATUS_PAID, STATUS_PENDING
from quickvoicy.services.payment_monitor import PAID, PENDING, SKIPPED, PaymentMonitor

CRED_A = "cred-a"
CRED_B = "cred-b"


@pytest.fixture
def monitor(store, wallets, notifier):
    return PaymentMonitor(
        store=store,
        wallet_factory=wallets.factory,
        notifier=notifier,
        concurrency=2,
        invoice_timeout=0.5,
    )


def _owner(store, platform_id, credential=CRED_A, platform="telegram"):
    user = store.get_or_create_user(platform, platform_id)
    if credential is not None:
        store.set_wallet_credential(user.id, credential)
    return store.get_user_by_id(user.id)


class TestScenarios:
    async def test_settled_invoice_is_marked_paid_and_owner_notified(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id, amount=2100)
        wallets.settled.add(inv.payment_hash)

        result = await monitor.check_pending_invoices()

        got = store.get_invoice(inv.id)
        assert got.status == STATUS_PAID
        assert got.paid_at is not None
        assert result.paid == 1
        assert len(notifier.sent) == 1
        platform, platform_id, text = notifier.sent[0]
        assert (platform, platform_id) == ("telegram", "10")
        assert "2100 sats" in text

    async def test_owner_without_wallet_is_skipped(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10", credential=None)
        inv = make_invoice(owner.id)

        result = await monitor.check_pending_invoices()

        assert store.get_invoice(inv.id).status == STATUS_PENDING
        assert result.skipped == 1
        assert notifier.sent == []
        assert wallets.connects == 0

    async def test_one_unreachable_wallet_does_not_block_others(self, store, monitor, wallets, notifier, make_invoice):
        a = _owner(store, "1", CRED_A)
        b = _owner(store, "2", CRED_B, platform="discord")
        inv_a = make_invoice(a.id)
        inv_b = make_invoice(b.id)
        wallets.unreachable.add(CRED_A)
        wallets.settled.update({inv_a.payment_hash, inv_b.payment_hash})

        result = await monitor.check_pending_invoices()

        assert store.get_invoice(inv_a.id).status == STATUS_PENDING
        assert store.get_invoice(inv_b.id).status == STATUS_PAID
        assert result.paid == 1
        assert result.skipped == 1
        assert [s[:2] for s in notifier.sent] == [("discord", "2")]

    async def test_paid_invoice_is_not_rechecked(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)

        await monitor.check_pending_invoices()
        second = await monitor.check_pending_invoices()

        assert second.checked == 0
        assert len(notifier.sent) == 1
        assert wallets.lookups == [inv.payment_hash]

    async def test_lookup_error_reads_as_unpaid(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10")
        broken = make_invoice(owner.id)
        fine = make_invoice(owner.id)
        wallets.lookup_errors.add(broken.payment_hash)
        wallets.settled.add(fine.payment_hash)

        result = await monitor.check_pending_invoices()

        assert store.get_invoice(broken.id).status == STATUS_PENDING
        assert store.get_invoice(fine.id).status == STATUS_PAID
        assert result.pending == 1
        assert result.paid == 1


class TestProperties:
    async def test_unsettled_invoice_stays_pending(self, store, monitor, notifier, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)

        result = await monitor.check_pending_invoices()

        assert store.get_invoice(inv.id).status == STATUS_PENDING
        assert result.pending == 1
        assert notifier.sent == []

    async def test_invoice_without_payment_hash_is_never_looked_up(self, store, monitor, wallets, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id, payment_hash=None)

        result = await monitor.check_pending_invoices()

        assert result.skipped == 1
        assert wallets.lookups == []
        assert store.get_invoice(inv.id).status == STATUS_PENDING

    async def test_hung_wallet_is_skipped_after_deadline(self, store, monitor, wallets, make_invoice):
        slow = _owner(store, "1", CRED_A)
        quick = _owner(store, "2", CRED_B)
        stuck = make_invoice(slow.id)
        ok = make_invoice(quick.id)
        wallets.hang.add(CRED_A)
        wallets.settled.update({stuck.payment_hash, ok.payment_hash})

        result = await asyncio.wait_for(monitor.check_pending_invoices(), timeout=5)

        assert store.get_invoice(stuck.id).status == STATUS_PENDING
        assert store.get_invoice(ok.id).status == STATUS_PAID
        assert result.skipped == 1

    async def test_wallet_is_disconnected_after_each_check(self, store, monitor, wallets, make_invoice):
        owner = _owner(store, "10")
        make_invoice(owner.id)
        make_invoice(owner.id)

        await monitor.check_pending_invoices()

        assert wallets.connects == 2
        assert wallets.disconnects == 2

    async def test_already_paid_elsewhere_is_not_notified_again(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)
        # paid through an on-demand check after this tick listed it
        store.set_invoice_status(inv.id, STATUS_PAID)

        outcome = await monitor.process_invoice(inv)

        assert outcome == SKIPPED
        assert notifier.sent == []

    async def test_notification_failure_keeps_invoice_paid(self, store, wallets, failing_notifier, make_invoice):
        failing = failing_notifier
        monitor = PaymentMonitor(store=store, wallet_factory=wallets.factory, notifier=failing, invoice_timeout=1)
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)

        result = await monitor.check_pending_invoices()

        assert result.paid == 1
        assert len(failing.sent) == 1
        assert store.get_invoice(inv.id).status == STATUS_PAID

    async def test_unusable_credential_is_skipped(self, store, notifier, make_invoice):
        def factory(credential):
            raise WalletConnectionError("bad uri")

        monitor = PaymentMonitor(store=store, wallet_factory=factory, notifier=notifier, invoice_timeout=1)
        owner = _owner(store, "10", credential="garbage")
        make_invoice(owner.id)

        result = await monitor.check_pending_invoices()

        assert result.skipped == 1
        assert notifier.sent == []

    async def test_overlapping_tick_is_skipped(self, store, monitor, wallets, make_invoice):
        owner = _owner(store, "10")
        make_invoice(owner.id)

        first = asyncio.create_task(monitor.check_pending_invoices())
        await asyncio.sleep(0)
        second = await monitor.check_pending_invoices()
        await first

        assert second.checked == 0
        assert first.result().checked == 1

    async def test_store_failure_does_not_raise(self, wallets, notifier):
        class BrokenStore:
            def list_pending_invoices(self):
                raise RuntimeError("database is locked")

        monitor = PaymentMonitor(store=BrokenStore(), wallet_factory=wallets.factory, notifier=notifier)

        result = await monitor.check_pending_invoices()

        assert result.checked == 0

    async def test_process_invoice_outcomes(self, store, monitor, wallets, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        assert await monitor.process_invoice(inv) == PENDING
        wallets.settled.add(inv.payment_hash)
        assert await monitor.process_invoice(inv) == PAID


class TestDeadline:
    async def test_slow_notification_after_late_answer_is_delivered(self, store, wallets, slow_notifier, make_invoice):
        monitor = PaymentMonitor(
            store=store, wallet_factory=wallets.factory, notifier=slow_notifier, invoice_timeout=0.3
        )
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)
        wallets.lookup_delay = 0.2

        result = await monitor.check_pending_invoices()

        assert store.get_invoice(inv.id).status == STATUS_PAID
        assert result.paid == 1
        assert result.skipped == 0
        assert len(slow_notifier.sent) == 1


class TestVanishedRows:
    async def test_invoice_deleted_before_marking_is_skipped(self, store, monitor, wallets, notifier, make_invoice):
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)
        listed = store.list_pending_invoices()
        assert store.delete_invoice(inv.id, owner.id)

        outcome = await monitor.process_invoice(listed[0])

        assert outcome == SKIPPED
        assert notifier.sent == []

    async def test_deleted_during_tick_does_not_raise(self, store, wallets, notifier, make_invoice):
        class DeletingStore:
            """Lists pending rows, then deletes them before the wallet answers."""

            def __init__(self, inner):
                self.inner = inner

            def list_pending_invoices(self):
                rows = self.inner.list_pending_invoices()
                for row in rows:
                    self.inner.delete_invoice(row.id, row.user_id)
                return rows

            def __getattr__(self, name):
                return getattr(self.inner, name)

        monitor = PaymentMonitor(
            store=DeletingStore(store), wallet_factory=wallets.factory, notifier=notifier, invoice_timeout=1
        )
        owner = _owner(store, "10")
        inv = make_invoice(owner.id)
        wallets.settled.add(inv.payment_hash)

        result = await monitor.check_pending_invoices()

        assert result.skipped == 1
        assert result.failed == 0
        assert notifier.sent == []
        assert store.get_invoice(inv.id) is None
