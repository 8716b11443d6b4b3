from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class InvoiceOut(BaseModel):
    id: str
    amount: int
    description: str
    clientName: str = ""
    clientEmail: str | None = None
    status: str
    walletInvoice: str
    paymentHash: str | None = None
    createdAt: datetime | None = None
    paidAt: datetime | None = None

    @classmethod
    def from_invoice(cls, invoice) -> "InvoiceOut":
        return cls(
            id=invoice.id,
            amount=invoice.amount,
            description=invoice.description,
            clientName=invoice.client_name or "",
            clientEmail=invoice.client_email,
            status=invoice.status,
            walletInvoice=invoice.wallet_invoice,
            paymentHash=invoice.payment_hash,
            createdAt=invoice.created_at,
            paidAt=invoice.paid_at,
        )


class InvoiceListOut(BaseModel):
    items: list[InvoiceOut]


class StatsOut(BaseModel):
    totalInvoices: int
    paidInvoices: int
    pendingInvoices: int
    totalEarned: int
    successRate: int
