"""
Invoice store: users and their invoices.

Each call opens its own short-lived session and commits before returning, so
every mutation is a single-row write. Returned rows are detached snapshots.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from quickvoicy.core.errors import ConflictError, NotFoundError
from quickvoicy.db.models import (
    INVOICE_STATUSES,
    PLATFORMS,
    STATUS_PAID,
    STATUS_PENDING,
    Invoice,
    User,
)
from quickvoicy.db.session import SessionLocal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserStats:
    total_invoices: int
    paid_invoices: int
    total_earned: int

    @property
    def pending_invoices(self) -> int:
        return self.total_invoices - self.paid_invoices

    @property
    def success_rate(self) -> int:
        """Paid share in whole percent."""
        if self.total_invoices <= 0:
            return 0
        return round(self.paid_invoices * 100 / self.total_invoices)


class InvoiceStore:
    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    # Users

    def get_user_by_platform_identity(self, platform: str, platform_id: str) -> User | None:
        db = self._get_db()
        try:
            return db.execute(
                select(User).where(User.platform == platform, User.platform_id == str(platform_id))
            ).scalar_one_or_none()
        finally:
            db.close()

    def get_user_by_id(self, user_id: int) -> User | None:
        db = self._get_db()
        try:
            return db.get(User, user_id)
        finally:
            db.close()

    def create_user(self, platform: str, platform_id: str) -> int:
        if platform not in PLATFORMS:
            raise ValueError(f"unknown platform: {platform}")
        db = self._get_db()
        try:
            user = User(platform=platform, platform_id=str(platform_id))
            db.add(user)
            db.commit()
            logger.info("Created user %s for %s:%s", user.id, platform, platform_id)
            return user.id
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"user {platform}:{platform_id} already exists") from e
        finally:
            db.close()

    def get_or_create_user(self, platform: str, platform_id: str) -> User:
        user = self.get_user_by_platform_identity(platform, platform_id)
        if user:
            return user
        try:
            user_id = self.create_user(platform, platform_id)
        except ConflictError:
            # Another handler created it between our read and insert
            user = self.get_user_by_platform_identity(platform, platform_id)
            if user is None:
                raise
            return user
        return self.get_user_by_id(user_id)

    def set_wallet_credential(self, user_id: int, credential: str | None) -> None:
        db = self._get_db()
        try:
            res = db.execute(
                update(User).where(User.id == user_id).values(wallet_credential=credential)
            )
            if res.rowcount == 0:
                db.rollback()
                raise NotFoundError(f"user {user_id} not found")
            db.commit()
        finally:
            db.close()

    # Invoices

    def create_invoice(self, invoice: Invoice) -> None:
        if not isinstance(invoice.amount, int) or isinstance(invoice.amount, bool) or invoice.amount <= 0:
            raise ValueError("amount must be a positive integer")
        if invoice.status is None:
            invoice.status = STATUS_PENDING
        db = self._get_db()
        try:
            if db.get(Invoice, invoice.id) is not None:
                raise ConflictError(f"invoice {invoice.id} already exists")
            db.add(invoice)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"invoice {invoice.id} already exists") from e
        finally:
            db.close()

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        db = self._get_db()
        try:
            return db.get(Invoice, invoice_id)
        finally:
            db.close()

    def find_user_invoice_by_prefix(self, user_id: int, prefix: str) -> Invoice | None:
        """Resolve the short id shown in chat. Returns None when absent or ambiguous."""
        prefix = (prefix or "").strip().lstrip("#").lower()
        if not prefix:
            return None
        db = self._get_db()
        try:
            rows = db.execute(
                select(Invoice)
                .where(Invoice.user_id == user_id, Invoice.id.startswith(prefix, autoescape=True))
                .limit(2)
            ).scalars().all()
            return rows[0] if len(rows) == 1 else None
        finally:
            db.close()

    def list_pending_invoices(self) -> list[Invoice]:
        db = self._get_db()
        try:
            return list(
                db.execute(select(Invoice).where(Invoice.status == STATUS_PENDING)).scalars().all()
            )
        finally:
            db.close()

    def set_invoice_status(
        self, invoice_id: str, status: str, paid_at: datetime | None = None
    ) -> bool:
        """
        Move an invoice to `status`.

        Returns True only if this call performed pending -> paid. Marking an
        already paid invoice paid again changes nothing (paid_at is kept).
        """
        if status not in INVOICE_STATUSES:
            raise ValueError(f"unknown status: {status}")
        db = self._get_db()
        try:
            if status == STATUS_PAID:
                res = db.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice_id, Invoice.status == STATUS_PENDING)
                    .values(status=STATUS_PAID, paid_at=paid_at or datetime.now(timezone.utc))
                )
                if res.rowcount:
                    db.commit()
                    return True
                db.rollback()
                if db.get(Invoice, invoice_id) is None:
                    raise NotFoundError(f"invoice {invoice_id} not found")
                return False

            current = db.execute(
                select(Invoice.status).where(Invoice.id == invoice_id)
            ).scalar_one_or_none()
            if current is None:
                raise NotFoundError(f"invoice {invoice_id} not found")
            if current == STATUS_PAID:
                raise ValueError(f"invoice {invoice_id} is paid; status cannot go back to pending")
            return False
        finally:
            db.close()

    def list_invoices_for_user(self, user_id: int, limit: int = 10) -> list[Invoice]:
        db = self._get_db()
        try:
            return list(
                db.execute(
                    select(Invoice)
                    .where(Invoice.user_id == user_id)
                    .order_by(Invoice.created_at.desc())
                    .limit(limit)
                ).scalars().all()
            )
        finally:
            db.close()

    def compute_user_stats(self, user_id: int) -> UserStats:
        paid = Invoice.status == STATUS_PAID
        db = self._get_db()
        try:
            total, paid_count, earned = db.execute(
                select(
                    func.count(Invoice.id),
                    func.coalesce(func.sum(case((paid, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((paid, Invoice.amount), else_=0)), 0),
                ).where(Invoice.user_id == user_id)
            ).one()
            return UserStats(
                total_invoices=int(total or 0),
                paid_invoices=int(paid_count or 0),
                total_earned=int(earned or 0),
            )
        finally:
            db.close()

    def delete_invoice(self, invoice_id: str, user_id: int) -> bool:
        db = self._get_db()
        try:
            res = db.execute(
                delete(Invoice).where(Invoice.id == invoice_id, Invoice.user_id == user_id)
            )
            db.commit()
            return bool(res.rowcount)
        finally:
            db.close()


store = InvoiceStore()
