"""
Storage port for the refresh pipeline.

The worker, quota guard and request helpers talk to a RefreshStore instead of
a session, so they can be driven by the SQL store in production and by an
in-memory SQLite engine in tests.

SqlRefreshStore opens a fresh session per call through execute_with_retry.
Connection-level failures that survive the retry surface as QueueUnavailable.
"""

from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence, TypeVar

from sqlalchemy.engine import Engine
from sqlmodel import Session

from keyword_snapshots.core.db_utils import RETRYABLE_EXCEPTIONS, execute_with_retry
from keyword_snapshots.core.errors import QueueUnavailable
from keyword_snapshots.models.keyword_queue import KeywordQueueEntry
from keyword_snapshots.models.keyword_snapshot import KeywordListing, KeywordSnapshot
from keyword_snapshots.provider.base import Listing
from keyword_snapshots.services import keyword_queue, snapshot_store

T = TypeVar("T")


class RefreshStore(Protocol):
    # Queue
    def enqueue(
        self, keyword: str, marketplace: str, priority: int, requested_by: Optional[str] = None
    ) -> KeywordQueueEntry: ...

    def claim_batch(self, limit: int) -> list[KeywordQueueEntry]: ...

    def complete(self, queue_id: str, claim_attempts: Optional[int] = None) -> bool: ...

    def fail(self, queue_id: str, reason: str, claim_attempts: Optional[int] = None) -> bool: ...

    def release(self, queue_id: str, claim_attempts: Optional[int] = None) -> bool: ...

    def get_entry(self, queue_id: str) -> Optional[KeywordQueueEntry]: ...

    def reclaim_stale(self, timeout_minutes: int, max_attempts: int) -> dict[str, int]: ...

    def count_manual_refreshes(self, user_id: str, since: datetime) -> int: ...

    def count_completed_since(self, since: datetime) -> int: ...

    def queue_stats(self) -> dict[str, int]: ...

    def cleanup(self, days_to_keep: int) -> dict[str, int]: ...

    # Snapshots
    def get_snapshot(self, keyword: str, marketplace: str) -> Optional[KeywordSnapshot]: ...

    def get_listings(self, keyword: str, marketplace: str) -> list[KeywordListing]: ...

    def put_snapshot(self, snapshot: KeywordSnapshot, listings: Sequence[Listing] = ()) -> KeywordSnapshot: ...

    def record_search(self, keyword: str, marketplace: str) -> int: ...

    def get_search_count(self, keyword: str, marketplace: str) -> int: ...

    def list_due_snapshots(self, limit: int, now: Optional[datetime] = None) -> list[tuple[KeywordSnapshot, int]]: ...


class SqlRefreshStore:
    """RefreshStore backed by SQLModel sessions on an engine."""

    def __init__(self, engine: Engine, max_retries: int = 2):
        self.engine = engine
        self.max_retries = max_retries

    def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        try:
            return execute_with_retry(self.engine, fn, max_retries=self.max_retries)
        except RETRYABLE_EXCEPTIONS as e:
            raise QueueUnavailable(operation, e) from e

    # Queue

    def enqueue(
        self, keyword: str, marketplace: str, priority: int, requested_by: Optional[str] = None
    ) -> KeywordQueueEntry:
        return self._run(
            "enqueue",
            lambda s: keyword_queue.enqueue_keyword(s, keyword, marketplace, priority, requested_by),
        )

    def claim_batch(self, limit: int) -> list[KeywordQueueEntry]:
        return self._run("claim_batch", lambda s: keyword_queue.claim_batch(s, limit))

    def complete(self, queue_id: str, claim_attempts: Optional[int] = None) -> bool:
        return self._run("complete", lambda s: keyword_queue.complete_entry(s, queue_id, claim_attempts))

    def fail(self, queue_id: str, reason: str, claim_attempts: Optional[int] = None) -> bool:
        return self._run("fail", lambda s: keyword_queue.fail_entry(s, queue_id, reason, claim_attempts))

    def release(self, queue_id: str, claim_attempts: Optional[int] = None) -> bool:
        return self._run("release", lambda s: keyword_queue.release_entry(s, queue_id, claim_attempts))

    def get_entry(self, queue_id: str) -> Optional[KeywordQueueEntry]:
        return self._run("get_entry", lambda s: keyword_queue.get_entry(s, queue_id))

    def reclaim_stale(self, timeout_minutes: int, max_attempts: int) -> dict[str, int]:
        return self._run(
            "reclaim_stale",
            lambda s: keyword_queue.reclaim_stale_entries(s, timeout_minutes, max_attempts),
        )

    def count_manual_refreshes(self, user_id: str, since: datetime) -> int:
        return self._run(
            "count_manual_refreshes",
            lambda s: keyword_queue.count_manual_refreshes(s, user_id, since),
        )

    def count_completed_since(self, since: datetime) -> int:
        return self._run("count_completed_since", lambda s: keyword_queue.count_completed_since(s, since))

    def queue_stats(self) -> dict[str, int]:
        return self._run("queue_stats", keyword_queue.get_queue_stats)

    def cleanup(self, days_to_keep: int) -> dict[str, int]:
        return self._run("cleanup", lambda s: keyword_queue.cleanup_old_entries(s, days_to_keep))

    # Snapshots

    def get_snapshot(self, keyword: str, marketplace: str) -> Optional[KeywordSnapshot]:
        return self._run("get_snapshot", lambda s: snapshot_store.get_snapshot(s, keyword, marketplace))

    def get_listings(self, keyword: str, marketplace: str) -> list[KeywordListing]:
        return self._run("get_listings", lambda s: snapshot_store.get_listings(s, keyword, marketplace))

    def put_snapshot(self, snapshot: KeywordSnapshot, listings: Sequence[Listing] = ()) -> KeywordSnapshot:
        return self._run("put_snapshot", lambda s: snapshot_store.put_snapshot(s, snapshot, listings))

    def record_search(self, keyword: str, marketplace: str) -> int:
        return self._run("record_search", lambda s: snapshot_store.record_search(s, keyword, marketplace))

    def get_search_count(self, keyword: str, marketplace: str) -> int:
        return self._run(
            "get_search_count",
            lambda s: snapshot_store.get_search_count(s, keyword, marketplace),
        )

    def list_due_snapshots(self, limit: int, now: Optional[datetime] = None) -> list[tuple[KeywordSnapshot, int]]:
        return self._run(
            "list_due_snapshots",
            lambda s: snapshot_store.list_due_snapshots(s, limit, now),
        )


__all__ = ["RefreshStore", "SqlRefreshStore"]
