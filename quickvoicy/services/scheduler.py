"""
Background job scheduler.

Uses APScheduler to run the payment monitor every POLL_INTERVAL seconds.
max_instances=1 + coalesce keep ticks from overlapping: a tick that is still
running when the next one is due makes APScheduler skip the late run.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from quickvoicy.core.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

PAYMENT_JOB_ID = "check_pending_invoices"


def setup_scheduler() -> None:
    """Configure jobs."""
    if not settings.payment_monitor_enabled:
        logger.info("Payment monitor is disabled in settings")
        return

    from quickvoicy.services.payment_monitor import check_pending_invoices

    scheduler.add_job(
        check_pending_invoices,
        trigger=IntervalTrigger(seconds=max(1, settings.poll_interval)),
        id=PAYMENT_JOB_ID,
        name="Check pending invoices",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Payment monitor scheduled every %s seconds", settings.poll_interval)


async def start_scheduler() -> None:
    setup_scheduler()
    if not scheduler.running:
        scheduler.start()
    logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler. An in-flight tick is abandoned, not awaited."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
