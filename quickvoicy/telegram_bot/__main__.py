"""Run the Telegram bot. Usage: python -m quickvoicy.telegram_bot"""
from __future__ import annotations

import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import BotCommand

from quickvoicy.core.config import settings
from quickvoicy.core.log import setup_logging
from quickvoicy.db.session import init_db
from quickvoicy.telegram_bot.handlers import router

setup_logging()
logger = logging.getLogger(__name__)

COMMANDS = [
    BotCommand(command="start", description="Main menu"),
    BotCommand(command="new", description='Create invoice: /new 5000 "Logo design"'),
    BotCommand(command="invoices", description="Recent invoices"),
    BotCommand(command="stats", description="Your statistics"),
    BotCommand(command="connect", description="Connect NWC wallet"),
    BotCommand(command="help", description="Help"),
]


async def main() -> None:
    if not settings.tg_bot_token:
        raise SystemExit("TG_BOT_TOKEN is not set")
    init_db()
    bot = Bot(token=settings.tg_bot_token)
    dp = Dispatcher(storage=MemoryStorage())
    dp.include_router(router)
    try:
        await bot.set_my_commands(COMMANDS)
        logger.info("Bot polling started")
        await dp.start_polling(bot, drop_pending_updates=True)
    finally:
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
