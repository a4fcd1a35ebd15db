"""
Keyword Queue Model

Durable refresh queue shared by every API process and worker. Each entry asks
for one (keyword, marketplace) snapshot to be rebuilt from the enrichment
provider.

Lifecycle:
    pending -> processing -> completed | failed

At most one entry per (keyword, marketplace) may be live (pending or
processing). This is enforced by a partial unique index, so two API processes
racing on the same keyword can't both insert.

Usage:
    from keyword_snapshots.models.keyword_queue import KeywordQueueEntry, QueueState

    entry = KeywordQueueEntry(keyword="vacuum storage bags", marketplace="amazon.com", priority=6)
    if entry.state == QueueState.PENDING:
        ...
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index, text

from keyword_snapshots.core.typing import utc_now


class QueueState(str, Enum):
    """State of a keyword queue entry."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATES = (QueueState.PENDING.value, QueueState.PROCESSING.value)
TERMINAL_STATES = (QueueState.COMPLETED.value, QueueState.FAILED.value)

# Manual (user-triggered) refreshes always run at the top priority
MANUAL_PRIORITY = 10
MIN_PRIORITY = 0
MAX_PRIORITY = 10

_LIVE_PREDICATE = text("state IN ('pending', 'processing')")


def new_queue_id() -> str:
    return uuid.uuid4().hex


class KeywordQueueEntry(SQLModel, table=True):
    """
    A request to refresh one keyword snapshot.

    Attributes:
        id: Opaque identifier handed back to the requester
        keyword: Normalized keyword (trimmed, lowercased, single-spaced)
        marketplace: Normalized marketplace domain, e.g. "amazon.com"
        priority: 0-10, higher is serviced first (manual refresh = 10)
        state: One of QueueState values
        requested_by: Requesting user, None for system-initiated refreshes
        requested_at: When requested_by last took ownership (drives the manual quota)
        attempts: Number of times a worker claimed this entry
        error_message: Reason recorded on failure
        created_at: Creation time (oldest-first tie break)
        claimed_at: When a worker moved the entry to processing
        finished_at: When the entry reached completed/failed
    """

    __tablename__ = "keyword_queue"

    id: str = Field(default_factory=new_queue_id, primary_key=True, max_length=32)
    keyword: str = Field(max_length=255)
    marketplace: str = Field(max_length=64)
    priority: int = Field(default=5)
    state: str = Field(default=QueueState.PENDING.value, max_length=16, index=True)
    requested_by: Optional[str] = Field(default=None, max_length=64, index=True)
    requested_at: datetime = Field(default_factory=utc_now)
    attempts: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    claimed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    __table_args__ = (
        # One live entry per key; the losing concurrent insert gets an IntegrityError
        Index(
            "uq_keywordqueue_live_key",
            "keyword",
            "marketplace",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        # Claim query: state + priority + created_at
        Index("ix_keywordqueue_claim", "state", "priority", "created_at"),
        # Manual quota count: requester + priority + requested_at
        Index("ix_keywordqueue_quota", "requested_by", "priority", "requested_at"),
        # Stale claim detection
        Index("ix_keywordqueue_stale", "state", "claimed_at"),
    )

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


__all__ = [
    "KeywordQueueEntry",
    "QueueState",
    "LIVE_STATES",
    "TERMINAL_STATES",
    "MANUAL_PRIORITY",
    "MIN_PRIORITY",
    "MAX_PRIORITY",
    "new_queue_id",
]
