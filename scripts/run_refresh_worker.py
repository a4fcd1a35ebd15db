#!/usr/bin/env python3
"""
Refresh Worker - drains the keyword refresh queue until stopped.

Run with: python scripts/run_refresh_worker.py

Entries live in the database, so a crashed worker loses nothing: entries it
left in processing are reclaimed by the next cycle (of any worker) once the
claim timeout passes. Several workers can run side by side; each entry is
claimed by exactly one of them.

Usage:
    python scripts/run_refresh_worker.py
    python scripts/run_refresh_worker.py --batch-size 5 --concurrency 2
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from keyword_snapshots.core.config import settings  # noqa: E402
from keyword_snapshots.core.errors import init_sentry  # noqa: E402
from keyword_snapshots.core.logging_config import get_logger  # noqa: E402
from keyword_snapshots.db import create_db_and_tables  # noqa: E402
from keyword_snapshots.provider.rainforest import RainforestProvider  # noqa: E402
from keyword_snapshots.services.refresh_worker import RefreshWorker  # noqa: E402
from keyword_snapshots.services.runtime import get_provider_breaker, get_store  # noqa: E402

logger = get_logger("refresh_worker")


async def main(batch_size: int, concurrency: int):
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    store = get_store()
    worker = RefreshWorker(
        store=store,
        provider=RainforestProvider(),
        breaker=get_provider_breaker(),
        batch_size=batch_size,
        concurrency=concurrency,
    )

    def handle_shutdown(signum, frame):
        logger.info("Shutdown requested, finishing current cycle", signal=signum)
        worker.request_shutdown()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    logger.info(
        "Worker starting",
        started_at=datetime.now(timezone.utc).isoformat(),
        queue=store.queue_stats(),
    )

    try:
        await worker.run_forever()
    finally:
        logger.info("Worker exited", queue=store.queue_stats())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh Worker - process keyword snapshot refreshes")
    parser.add_argument("--batch-size", type=int, default=settings.WORKER_BATCH_SIZE, help="Entries per cycle")
    parser.add_argument(
        "--concurrency", type=int, default=settings.WORKER_CONCURRENCY, help="Parallel provider calls"
    )
    args = parser.parse_args()

    asyncio.run(main(args.batch_size, args.concurrency))
