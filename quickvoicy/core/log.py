from __future__ import annotations

import logging
import sys

from quickvoicy.core.config import settings


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    # aiohttp/httpx request lines are noisy at INFO during polling
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)
