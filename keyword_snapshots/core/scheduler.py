from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from keyword_snapshots.core.config import settings
from keyword_snapshots.core.errors import QueueUnavailable, capture_exception
from keyword_snapshots.core.logging_config import get_logger
from keyword_snapshots.services.refresh_policy import priority_for
from keyword_snapshots.services.refresh_worker import CycleResult, RefreshWorker
from keyword_snapshots.services.runtime import get_store, get_worker
from keyword_snapshots.services.store import RefreshStore

logger = get_logger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def job_run_refresh_cycle(worker: Optional[RefreshWorker] = None) -> Optional[CycleResult]:
    """Drain one batch from the keyword queue."""
    worker = worker or get_worker()
    try:
        return await worker.run_cycle()
    except QueueUnavailable as e:
        logger.error("Refresh cycle skipped, queue unavailable", error=str(e))
    except Exception as e:
        capture_exception(e, context={"job": "job_run_refresh_cycle"})
    return None


async def job_enqueue_stale_snapshots(store: Optional[RefreshStore] = None, limit: Optional[int] = None) -> int:
    """
    Queue refreshes for stored snapshots that went stale without anyone
    looking them up. Most-searched keywords go first.

    Returns:
        Number of keywords queued
    """
    store = store or get_store()
    limit = limit if limit is not None else settings.STALE_SWEEP_LIMIT
    queued = 0
    try:
        for snapshot, search_count in store.list_due_snapshots(limit):
            store.enqueue(snapshot.keyword, snapshot.marketplace, priority_for(search_count))
            queued += 1
    except QueueUnavailable as e:
        logger.error("Stale sweep interrupted, queue unavailable", error=str(e), queued=queued)
    except Exception as e:
        capture_exception(e, context={"job": "job_enqueue_stale_snapshots", "queued": queued})

    if queued:
        logger.info("Stale sweep queued snapshots", queued=queued)
    return queued


async def job_cleanup_old_entries(store: Optional[RefreshStore] = None) -> int:
    """Delete finished queue entries past the retention window."""
    store = store or get_store()
    try:
        return store.cleanup(settings.QUEUE_RETENTION_DAYS)["deleted"]
    except QueueUnavailable as e:
        logger.error("Queue cleanup skipped, queue unavailable", error=str(e))
    except Exception as e:
        capture_exception(e, context={"job": "job_cleanup_old_entries"})
    return 0


def start_scheduler():
    # max_instances=1: a slow cycle never overlaps the next one
    # coalesce=True: missed runs collapse into one
    scheduler.add_job(
        job_run_refresh_cycle,
        IntervalTrigger(minutes=settings.WORKER_INTERVAL_MINUTES),
        id="job_run_refresh_cycle",
        max_instances=1,
        misfire_grace_time=300,  # 5 minutes
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_enqueue_stale_snapshots,
        IntervalTrigger(hours=1),
        id="job_enqueue_stale_snapshots",
        max_instances=1,
        misfire_grace_time=1800,  # 30 minutes
        coalesce=True,
        replace_existing=True,
    )

    # Off-peak, after the UTC day rolls over
    scheduler.add_job(
        job_cleanup_old_entries,
        CronTrigger(hour=3, minute=0),
        id="job_cleanup_old_entries",
        max_instances=1,
        misfire_grace_time=7200,  # 2 hours
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started",
        jobs=[job.id for job in scheduler.get_jobs()],
        refresh_interval_minutes=settings.WORKER_INTERVAL_MINUTES,
    )


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
