"""
Shared FastAPI dependencies.
"""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from quickvoicy.core.config import settings
from quickvoicy.db.store import InvoiceStore, store


def get_store() -> InvoiceStore:
    return store


def verify_internal_secret(x_internal_secret: str | None = Header(default=None)) -> None:
    """
    Guard for the internal read API. Open when INTERNAL_SECRET is empty
    (local development); otherwise the X-Internal-Secret header must match.
    """
    if not settings.internal_secret:
        return
    if not x_internal_secret or not hmac.compare_digest(x_internal_secret, settings.internal_secret):
        raise HTTPException(status_code=403, detail="forbidden")
