"""Quickvoicy: Lightning invoices from Telegram and Discord."""
