#!/usr/bin/env python3
"""
Run a single refresh cycle and print what it did.

Useful from cron or for checking the provider setup by hand.

Usage:
    python scripts/run_worker_once.py
    python scripts/run_worker_once.py --sweep   # queue stale snapshots first
"""

import argparse
import asyncio
import sys
from dataclasses import asdict
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from keyword_snapshots.core.errors import QueueUnavailable  # noqa: E402
from keyword_snapshots.core.scheduler import job_enqueue_stale_snapshots  # noqa: E402
from keyword_snapshots.db import create_db_and_tables  # noqa: E402
from keyword_snapshots.services.runtime import get_store, get_worker  # noqa: E402


async def main(sweep: bool) -> int:
    create_db_and_tables()

    if sweep:
        queued = await job_enqueue_stale_snapshots()
        print(f"[Worker] Stale sweep queued {queued} keywords")

    try:
        result = await get_worker().run_cycle()
    except QueueUnavailable as e:
        print(f"[Worker] Queue unavailable: {e}")
        return 1

    print(f"[Worker] Cycle result: {asdict(result)}")
    print(f"[Worker] Queue stats: {get_store().queue_stats()}")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one keyword refresh cycle")
    parser.add_argument("--sweep", action="store_true", help="Queue stale snapshots before the cycle")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.sweep)))
