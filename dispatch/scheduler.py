from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from config.config import PENDING_RESYNC_INTERVAL, TIMEZONE
from dispatch.exceptions import StoreError


async def resync_pending_requests(coordinator):
    """
    Re-derives the pending-request cache from the store.
    Picks up requests lost on restart or stuck after a failed accept.
    """
    try:
        await coordinator.resync_pending()
    except StoreError:
        # The store operation has already logged the cause; the next run retries
        logger.warning("Pending resync skipped: store unavailable")


def setup_scheduler(coordinator, interval: int = PENDING_RESYNC_INTERVAL) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(
        resync_pending_requests, trigger='interval', seconds=interval,
        kwargs={'coordinator': coordinator}, id='resync_pending', max_instances=1, coalesce=True
    )
    return scheduler
