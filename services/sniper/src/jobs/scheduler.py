"""APScheduler setup for the periodic price monitor and retention sweep."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from conf import MonitorConf
from engine import PriceMonitor, RetentionJanitor
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None
_monitor: Optional[PriceMonitor] = None
_janitor: Optional[RetentionJanitor] = None


async def price_monitor_job():
    """Refresh prices of all pending bids and send price-exceeded alerts."""
    try:
        await _monitor.run_once()
    except Exception as e:
        logger.error(f"Price monitor run failed: {e}", exc_info=True)


async def retention_job():
    """Purge terminal bids past retention."""
    try:
        await _janitor.run_once()
    except Exception as e:
        logger.error(f"Retention sweep failed: {e}", exc_info=True)


def create_scheduler() -> AsyncIOScheduler:
    global _scheduler
    _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def init_scheduler(monitor: PriceMonitor, janitor: RetentionJanitor, conf: MonitorConf) -> AsyncIOScheduler:
    """Add the periodic jobs and start the scheduler."""
    global _monitor, _janitor
    _monitor = monitor
    _janitor = janitor
    scheduler = _scheduler or create_scheduler()
    scheduler.add_job(
        price_monitor_job,
        trigger=IntervalTrigger(seconds=conf.interval_seconds),
        id="price_monitor",
        name="Price Monitor",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        retention_job,
        trigger=IntervalTrigger(seconds=conf.retention_sweep_interval_seconds),
        id="bid_retention",
        name="Bid Retention Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"APScheduler started with price monitor (every {conf.interval_seconds}s) "
        f"and retention sweep (every {conf.retention_sweep_interval_seconds}s)"
    )
    return scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("APScheduler shut down")
    _scheduler = None
