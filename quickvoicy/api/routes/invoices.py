from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from quickvoicy.api.dependencies import get_store, verify_internal_secret
from quickvoicy.api.schemas import InvoiceListOut, InvoiceOut, StatsOut
from quickvoicy.db.models import PLATFORMS
from quickvoicy.db.store import InvoiceStore, UserStats
from quickvoicy.services import pdf

router = APIRouter(prefix="/api", tags=["invoices"], dependencies=[Depends(verify_internal_secret)])


def _check_platform(platform: str) -> None:
    if platform not in PLATFORMS:
        raise HTTPException(status_code=404, detail="unknown platform")


@router.get("/users/{platform}/{platform_id}/invoices", response_model=InvoiceListOut)
async def list_user_invoices(
    platform: str,
    platform_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    store: InvoiceStore = Depends(get_store),
):
    _check_platform(platform)
    user = await asyncio.to_thread(store.get_user_by_platform_identity, platform, platform_id)
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")
    invoices = await asyncio.to_thread(store.list_invoices_for_user, user.id, limit)
    return InvoiceListOut(items=[InvoiceOut.from_invoice(inv) for inv in invoices])


@router.get("/users/{platform}/{platform_id}/stats", response_model=StatsOut)
async def user_stats(platform: str, platform_id: str, store: InvoiceStore = Depends(get_store)):
    _check_platform(platform)
    user = await asyncio.to_thread(store.get_user_by_platform_identity, platform, platform_id)
    stats = await asyncio.to_thread(store.compute_user_stats, user.id) if user else UserStats(0, 0, 0)
    return StatsOut(
        totalInvoices=stats.total_invoices,
        paidInvoices=stats.paid_invoices,
        pendingInvoices=stats.pending_invoices,
        totalEarned=stats.total_earned,
        successRate=stats.success_rate,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(invoice_id: str, store: InvoiceStore = Depends(get_store)):
    invoice = await asyncio.to_thread(store.get_invoice, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="invoice not found")
    return InvoiceOut.from_invoice(invoice)


@router.get("/invoices/{invoice_id}/pdf")
async def invoice_pdf(
    invoice_id: str,
    receipt: bool = Query(default=False),
    store: InvoiceStore = Depends(get_store),
):
    """Invoice PDF, or the receipt with ?receipt=true once paid. The file is removed after sending."""
    invoice = await asyncio.to_thread(store.get_invoice, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="invoice not found")
    if receipt and not invoice.is_paid:
        raise HTTPException(status_code=409, detail="invoice is not paid")

    render = pdf.render_receipt_pdf if receipt else pdf.render_invoice_pdf
    path = await asyncio.to_thread(render, invoice)
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=pdf.download_name(invoice, receipt),
        background=BackgroundTask(pdf.cleanup, path),
    )
