"""
Run the Discord bot: python -m quickvoicy.discord_bot
"""
import logging

from quickvoicy.core.config import settings
from quickvoicy.core.log import setup_logging
from quickvoicy.db.session import init_db
from quickvoicy.discord_bot.bot import QuickvoicyBot

logger = logging.getLogger(__name__)


def main() -> None:
    setup_logging()
    if not settings.discord_bot_token:
        raise SystemExit("DISCORD_BOT_TOKEN is not set")
    init_db()
    bot = QuickvoicyBot()
    logger.info("Starting Discord bot")
    bot.run(settings.discord_bot_token, log_handler=None)


if __name__ == "__main__":
    main()
