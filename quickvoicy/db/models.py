from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from quickvoicy.db.base import Base

PLATFORM_TELEGRAM = "telegram"
PLATFORM_DISCORD = "discord"
PLATFORMS = (PLATFORM_TELEGRAM, PLATFORM_DISCORD)

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
INVOICE_STATUSES = (STATUS_PENDING, STATUS_PAID)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("platform", "platform_id", name="uq_users_platform_identity"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # 'telegram' or 'discord'
    platform: Mapped[str] = mapped_column(String(16))
    # Chat identity on that platform (Telegram user id, Discord snowflake), stored as text
    platform_id: Mapped[str] = mapped_column(String(64))

    # Nostr Wallet Connect URI (nostr+walletconnect://...). Contains a secret.
    wallet_credential: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} {self.platform}:{self.platform_id}>"


class Invoice(Base):
    __tablename__ = "invoices"

    # uuid4 string
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    # Satoshis
    amount: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text)
    client_name: Mapped[str] = mapped_column(String(256), default="")
    client_email: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # 'pending' -> 'paid', never back
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING, index=True)

    # BOLT11 payment request returned by the wallet
    wallet_invoice: Mapped[str] = mapped_column(Text)
    # Correlation key for lookup_invoice; invoices without it are never reconciled
    payment_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def is_paid(self) -> bool:
        return self.status == STATUS_PAID

    def __repr__(self) -> str:
        return f"<Invoice {self.short_id} user={self.user_id} {self.amount} sats {self.status}>"
