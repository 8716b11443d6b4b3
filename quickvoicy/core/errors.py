"""Error types shared by the store, the wallet client and the bots."""
from __future__ import annotations


class QuickvoicyError(Exception):
    """Base class for application errors."""


class NotFoundError(QuickvoicyError):
    """Row is absent (never existed or was deleted concurrently)."""


class ConflictError(QuickvoicyError):
    """Duplicate user identity or invoice id."""


class WalletConnectionError(QuickvoicyError):
    """Malformed connection URI or unreachable relay."""


class WalletError(QuickvoicyError):
    """Wallet rejected a request or replied with something unusable."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class WalletNotConnectedError(QuickvoicyError):
    """User has no wallet credential stored."""
