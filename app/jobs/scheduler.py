"""Cron jobs keeping the upstream catalog warm.

APScheduler jobs on the application event loop: an hourly refresh of the
categorised asset list and a six-hourly campaign name prefetch.
"""
from __future__ import annotations

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.config import SCHEDULER_SETTINGS
from app.integrations.base import ReportSource, UpstreamAPIError
from app.utils import get_logger

logger = get_logger("scheduler")


async def refresh_categorized_assets(source: ReportSource) -> None:
    logger.info("Scheduled asset refresh starting")
    try:
        assets = await source.get_categorized_assets(refresh=True)
        logger.info(
            "Scheduled asset refresh complete",
            campaigns=len(assets.get("campaigns", [])),
            journeys=len(assets.get("journeys", [])),
        )
    except UpstreamAPIError as e:
        logger.error("Scheduled asset refresh failed", error=str(e), status_code=e.status_code)


async def prefetch_catalog(source: ReportSource) -> None:
    logger.info("Scheduled catalog prefetch starting")
    try:
        count = await source.prefetch_catalog()
        logger.info("Scheduled catalog prefetch complete", names=count)
    except UpstreamAPIError as e:
        logger.error("Scheduled catalog prefetch failed", error=str(e), status_code=e.status_code)


def start_scheduler(source: ReportSource) -> Optional[AsyncIOScheduler]:
    """Configure and start the scheduler. Returns None when disabled."""
    if not SCHEDULER_SETTINGS["enabled"]:
        logger.info("Scheduler disabled via config")
        return None

    grace = int(SCHEDULER_SETTINGS["misfire_grace_seconds"])  # type: ignore[arg-type]
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        refresh_categorized_assets,
        "cron",
        args=[source],
        id="refresh_categorized_assets",
        replace_existing=True,
        misfire_grace_time=grace,
        coalesce=True,
        **SCHEDULER_SETTINGS["asset_refresh_cron"],  # type: ignore[arg-type]
    )
    scheduler.add_job(
        prefetch_catalog,
        "cron",
        args=[source],
        id="prefetch_catalog",
        replace_existing=True,
        misfire_grace_time=grace,
        coalesce=True,
        **SCHEDULER_SETTINGS["catalog_prefetch_cron"],  # type: ignore[arg-type]
    )
    scheduler.start()
    logger.info("Scheduler started", jobs=[job.id for job in scheduler.get_jobs()])
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


__all__ = ["start_scheduler", "stop_scheduler", "refresh_categorized_assets", "prefetch_catalog"]
