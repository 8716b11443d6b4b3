"""
Outbound chat notifications (payment received etc.).

Fire-and-forget: failures are logged and reported as False, never raised.
"""
from __future__ import annotations

import logging

import httpx

from quickvoicy.core.config import settings
from quickvoicy.db.models import PLATFORM_DISCORD, PLATFORM_TELEGRAM

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
DISCORD_API = "https://discord.com/api/v10"


async def _notify_telegram(client: httpx.AsyncClient, chat_id: str, text: str) -> None:
    token = (settings.tg_bot_token or "").strip()
    resp = await client.post(
        f"{TELEGRAM_API}/bot{token}/sendMessage",
        json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
    )
    resp.raise_for_status()


async def _notify_discord(client: httpx.AsyncClient, user_id: str, text: str) -> None:
    token = (settings.discord_bot_token or "").strip()
    headers = {"Authorization": f"Bot {token}"}
    dm = await client.post(
        f"{DISCORD_API}/users/@me/channels", json={"recipient_id": user_id}, headers=headers
    )
    dm.raise_for_status()
    channel_id = dm.json()["id"]
    resp = await client.post(
        f"{DISCORD_API}/channels/{channel_id}/messages", json={"content": text}, headers=headers
    )
    resp.raise_for_status()


def _token_for(platform: str) -> str:
    if platform == PLATFORM_TELEGRAM:
        return (settings.tg_bot_token or "").strip()
    if platform == PLATFORM_DISCORD:
        return (settings.discord_bot_token or "").strip()
    return ""


async def notify(platform: str, platform_id: str, text: str) -> bool:
    """Send `text` to a user on `platform`. Returns True when delivered."""
    if not _token_for(platform):
        logger.debug("No bot token for %s, notification to %s dropped", platform, platform_id)
        return False
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            if platform == PLATFORM_TELEGRAM:
                await _notify_telegram(client, platform_id, text)
            else:
                await _notify_discord(client, platform_id, text)
        return True
    except Exception as e:
        logger.warning("Failed to notify %s user %s: %s", platform, platform_id, e)
        return False


def payment_received_text(platform: str, amount: int, description: str, short_id: str) -> str:
    if platform == PLATFORM_TELEGRAM:
        desc = description.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        return (
            "🎉 <b>Payment received!</b>\n\n"
            f"📋 Invoice #{short_id}\n"
            f"💰 Amount: <code>{amount} sats</code>\n"
            f"📝 {desc}"
        )
    return f"🎉 **Payment received!**\nInvoice #{short_id}: {amount} sats\n{description}"
