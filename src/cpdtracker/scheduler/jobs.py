"""
APScheduler job for background auto-sync.

Every `sync_interval_minutes` (and once right at startup) the tick runs a
bidirectional sync, but only if a backend is configured, reachable and
accepts the session. Otherwise the tick is a no-op. A tick never raises.

max_instances=1 + coalesce=True: a slow sync is never overlapped by the next
tick, and missed ticks collapse into one.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cpdtracker.config import get_settings
from cpdtracker.sync.status import SyncDirection

logger = logging.getLogger(__name__)


def build_scheduler(
    sync_engine,
    interval_minutes: Optional[int] = None,
    run_immediately: bool = True,
) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_engine: SyncEngine the job drives.
        interval_minutes: Override settings.sync_interval_minutes.
        run_immediately: Also fire once as soon as the scheduler starts.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    minutes = interval_minutes or get_settings().sync_interval_minutes
    scheduler = AsyncIOScheduler()

    job_options = {}
    if run_immediately:
        job_options["next_run_time"] = datetime.now(timezone.utc)

    scheduler.add_job(
        _auto_sync,
        trigger="interval",
        minutes=minutes,
        id="auto_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"sync_engine": sync_engine},
        **job_options,
    )

    return scheduler


async def _auto_sync(sync_engine) -> None:
    """Periodic tick: sync when configured, online and signed in."""
    try:
        if not sync_engine.adapter.is_configured():
            logger.debug("Auto-sync skipped: no backend configured")
            return
        if sync_engine.is_running:
            logger.debug("Auto-sync skipped: a sync is already running")
            return
        if not await sync_engine.monitor.check():
            logger.info("Auto-sync skipped: backend unreachable")
            return
        if not await sync_engine.adapter.is_authenticated():
            logger.info("Auto-sync skipped: not signed in")
            return

        logger.info("Auto-sync starting at %s", datetime.now(timezone.utc).isoformat())
        result = await sync_engine.sync(SyncDirection.BIDIRECTIONAL)
        if result.success:
            logger.info(
                "Auto-sync done: %d up, %d down", result.uploaded, result.downloaded
            )
        else:
            logger.warning("Auto-sync finished with errors: %s", "; ".join(result.errors))

    except Exception as exc:
        logger.error("Auto-sync failed: %s", exc)
