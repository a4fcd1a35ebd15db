"""
Request-side entry points of the refresh pipeline.

read_snapshot serves whatever snapshot is stored right now and, when the
refresh policy says it is due, queues a system refresh in the background.
request_manual_refresh is the user-triggered path: quota first, then a
priority 10 entry.

Neither waits for the worker.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from keyword_snapshots.core.errors import QueueUnavailable, QuotaExceeded
from keyword_snapshots.core.logging_config import get_logger
from keyword_snapshots.core.typing import ensure_utc, utc_now
from keyword_snapshots.models.keyword_queue import MANUAL_PRIORITY
from keyword_snapshots.models.keyword_snapshot import KeywordSnapshot
from keyword_snapshots.services.keyword_queue import normalize_keyword, normalize_marketplace
from keyword_snapshots.services.quota import QuotaDenied, QuotaGuard
from keyword_snapshots.services.refresh_policy import is_due, priority_for
from keyword_snapshots.services.store import RefreshStore

logger = get_logger(__name__)


@dataclass
class SnapshotRead:
    keyword: str
    marketplace: str
    snapshot: Optional[KeywordSnapshot]
    is_stale: bool
    refresh_queue_id: Optional[str] = None
    search_count: int = 0


@dataclass
class ManualRefresh:
    queue_id: str
    quota_remaining: int
    queued_at: datetime


def _normalized_key(keyword: str, marketplace: str) -> tuple[str, str]:
    key = (normalize_keyword(keyword), normalize_marketplace(marketplace))
    if not key[0]:
        raise ValueError("keyword is required")
    if not key[1]:
        raise ValueError("marketplace is required")
    return key


def read_snapshot(
    store: RefreshStore,
    keyword: str,
    marketplace: str,
    now: Optional[datetime] = None,
) -> SnapshotRead:
    """
    Return the current snapshot and queue a refresh if it is due.

    The lookup is counted as demand. Failing to count or to enqueue is logged
    and never fails the read.

    Raises:
        ValueError: blank keyword or marketplace
        QueueUnavailable: the snapshot itself could not be read
    """
    keyword, marketplace = _normalized_key(keyword, marketplace)

    search_count = 0
    try:
        search_count = store.record_search(keyword, marketplace)
    except QueueUnavailable as e:
        logger.warning("Could not record keyword search", keyword=keyword, marketplace=marketplace, error=str(e))

    snapshot = store.get_snapshot(keyword, marketplace)
    demand_priority = priority_for(search_count)

    if snapshot is None:
        stale = True
    else:
        stale = is_due(snapshot.last_updated, snapshot.refresh_priority, now=now)

    result = SnapshotRead(
        keyword=keyword,
        marketplace=marketplace,
        snapshot=snapshot,
        is_stale=stale,
        search_count=search_count,
    )
    if not stale:
        return result

    try:
        entry = store.enqueue(keyword, marketplace, demand_priority)
        result.refresh_queue_id = entry.id
        logger.debug("Queued stale snapshot", keyword=keyword, queue_id=entry.id, priority=entry.priority)
    except QueueUnavailable as e:
        logger.warning("Could not queue stale snapshot", keyword=keyword, marketplace=marketplace, error=str(e))

    return result


def request_manual_refresh(
    store: RefreshStore,
    guard: QuotaGuard,
    keyword: str,
    marketplace: str,
    user_id: str,
    as_of: Optional[datetime] = None,
) -> ManualRefresh:
    """
    Queue a user-triggered refresh at priority 10.

    Raises:
        ValueError: blank keyword or marketplace
        QuotaExceeded: the user used up today's manual refreshes
        QueueUnavailable: the queue could not be written
    """
    keyword, marketplace = _normalized_key(keyword, marketplace)

    decision = guard.check_and_reserve(user_id, as_of)
    if isinstance(decision, QuotaDenied):
        raise QuotaExceeded(user_id=user_id, limit=guard.limit, resets_at=decision.resets_at)

    requested_from = utc_now()
    entry = store.enqueue(keyword, marketplace, MANUAL_PRIORITY, requested_by=user_id)

    # Merging into an entry that was already at priority 10 charges nobody
    charged = entry.requested_by == user_id and ensure_utc(entry.requested_at) >= requested_from  # type: ignore[operator]
    remaining = decision.remaining if charged else min(decision.remaining + 1, guard.limit)

    logger.info(
        "Manual refresh queued",
        keyword=keyword,
        marketplace=marketplace,
        user_id=user_id,
        queue_id=entry.id,
        charged=charged,
        quota_remaining=remaining,
    )
    return ManualRefresh(
        queue_id=entry.id,
        quota_remaining=remaining,
        queued_at=ensure_utc(entry.requested_at),  # type: ignore[arg-type]
    )


__all__ = [
    "SnapshotRead",
    "ManualRefresh",
    "read_snapshot",
    "request_manual_refresh",
]
