"""
Keyword Queue Service

Persistent refresh queue for keyword snapshots. Entries live in the database
so they survive restarts and can be shared by any number of API processes and
workers.

Concurrency rules:
    - One live (pending/processing) entry per (keyword, marketplace). Enqueue
      looks for a live entry first; a concurrent insert that slips past the
      lookup hits the partial unique index and is turned into a priority raise.
    - Claiming is a conditional UPDATE ... WHERE state = 'pending'. Only the
      caller whose update touched the row owns the entry, so two workers never
      process the same entry. On PostgreSQL candidates are also selected with
      FOR UPDATE SKIP LOCKED to keep workers off each other's rows.
    - complete/fail/release only move entries out of processing. Repeating
      them is a no-op. Given the attempts value seen at claim time they also
      refuse to touch an entry that was reclaimed and claimed again.

Usage:
    from keyword_snapshots.services.keyword_queue import (
        enqueue_keyword,
        claim_batch,
        complete_entry,
        fail_entry,
        reclaim_stale_entries,
    )

    with Session(engine) as session:
        entry = enqueue_keyword(session, "Vacuum Storage Bags ", "amazon.com", priority=6)

        for entry in claim_batch(session, limit=10):
            try:
                # Fetch + aggregate...
                complete_entry(session, entry.id)
            except Exception as e:
                fail_entry(session, entry.id, str(e))

        # Recover entries left in processing by a crashed worker
        reclaim_stale_entries(session, timeout_minutes=30)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from keyword_snapshots.core.typing import col, utc_now
from keyword_snapshots.models.keyword_queue import (
    KeywordQueueEntry,
    QueueState,
    LIVE_STATES,
    TERMINAL_STATES,
    MANUAL_PRIORITY,
    MIN_PRIORITY,
    MAX_PRIORITY,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
# Enqueue loses at most a couple of races before the key settles
ENQUEUE_ATTEMPTS = 3
# Claim re-selects when concurrent workers took some of the candidates
CLAIM_ROUNDS = 3


def normalize_keyword(keyword: str) -> str:
    """Trim, collapse inner whitespace and lowercase."""
    return " ".join(keyword.split()).lower()


def normalize_marketplace(marketplace: str) -> str:
    return marketplace.strip().lower()


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


def find_live_entry(session: Session, keyword: str, marketplace: str) -> Optional[KeywordQueueEntry]:
    """Return the pending/processing entry for an already-normalized key, if any."""
    stmt = select(KeywordQueueEntry).where(
        col(KeywordQueueEntry.keyword) == keyword,
        col(KeywordQueueEntry.marketplace) == marketplace,
        col(KeywordQueueEntry.state).in_(LIVE_STATES),
    )
    return session.exec(stmt).first()


def _raise_priority(
    session: Session,
    entry: KeywordQueueEntry,
    priority: int,
    requested_by: Optional[str],
) -> Optional[KeywordQueueEntry]:
    """
    Raise a live entry's priority in place.

    Returns the entry (refreshed), or None if it stopped being live before the
    update landed, in which case the caller should insert a new one.
    """
    if priority <= entry.priority:
        logger.debug(f"Entry id={entry.id} already queued at priority={entry.priority}, keeping it")
        return entry

    now = utc_now()
    values: dict = {"priority": priority, "updated_at": now}
    if priority == MANUAL_PRIORITY and requested_by:
        # The manual requester takes ownership so the refresh counts against their quota
        values["requested_by"] = requested_by
        values["requested_at"] = now

    stmt = (
        update(KeywordQueueEntry)
        .where(
            col(KeywordQueueEntry.id) == entry.id,
            col(KeywordQueueEntry.priority) < priority,
            col(KeywordQueueEntry.state).in_(LIVE_STATES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    session.refresh(entry)

    if result.rowcount:
        logger.info(f"Raised entry id={entry.id} ({entry.keyword}) to priority={priority}")
    if not entry.is_live:
        return None
    return entry


def enqueue_keyword(
    session: Session,
    keyword: str,
    marketplace: str,
    priority: int = 5,
    requested_by: Optional[str] = None,
) -> KeywordQueueEntry:
    """
    Enqueue a keyword refresh.

    If a live entry for the same keyword/marketplace exists it is returned
    instead of creating a duplicate; its priority is raised when the new
    request is more urgent.

    Args:
        session: Database session
        keyword: Keyword as typed by the user (normalized here)
        marketplace: Marketplace domain, e.g. "amazon.com"
        priority: 0-10, higher = more urgent (clamped)
        requested_by: User ID for manual requests, None for system refreshes

    Returns:
        The live KeywordQueueEntry for this key

    Raises:
        ValueError: keyword or marketplace is blank
    """
    keyword = normalize_keyword(keyword)
    marketplace = normalize_marketplace(marketplace)
    if not keyword:
        raise ValueError("keyword is required")
    if not marketplace:
        raise ValueError("marketplace is required")
    priority = clamp_priority(priority)

    for _ in range(ENQUEUE_ATTEMPTS):
        existing = find_live_entry(session, keyword, marketplace)
        if existing:
            raised = _raise_priority(session, existing, priority, requested_by)
            if raised is not None:
                return raised
            continue

        now = utc_now()
        entry = KeywordQueueEntry(
            keyword=keyword,
            marketplace=marketplace,
            priority=priority,
            requested_by=requested_by,
            requested_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        try:
            session.commit()
        except IntegrityError:
            # Another process inserted the live entry between our lookup and insert
            session.rollback()
            logger.info(f"Concurrent enqueue for '{keyword}' ({marketplace}), merging into the live entry")
            continue

        session.refresh(entry)
        logger.info(
            f"Enqueued entry id={entry.id} for '{keyword}' ({marketplace}), "
            f"priority={priority}, requested_by={requested_by}"
        )
        return entry

    raise RuntimeError(f"Could not settle a live queue entry for '{keyword}' ({marketplace})")


def claim_batch(session: Session, limit: int) -> list[KeywordQueueEntry]:
    """
    Claim up to `limit` pending entries for processing.

    Entries are ordered by priority (desc) then created_at (asc) and moved to
    PROCESSING with claimed_at set and attempts incremented. Each row is taken
    with a conditional update on state = 'pending', so an entry grabbed by a
    concurrent worker is simply skipped.

    Args:
        session: Database session
        limit: Maximum number of entries to claim

    Returns:
        Claimed entries in service order (may be empty)
    """
    if limit <= 0:
        return []

    dialect = session.get_bind().dialect.name
    claimed_ids: list[str] = []

    for _ in range(CLAIM_ROUNDS):
        remaining = limit - len(claimed_ids)
        if remaining <= 0:
            break

        stmt = (
            select(KeywordQueueEntry.id)
            .where(col(KeywordQueueEntry.state) == QueueState.PENDING.value)
            .order_by(
                col(KeywordQueueEntry.priority).desc(),
                col(KeywordQueueEntry.created_at).asc(),
            )
            .limit(remaining)
        )
        if dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        candidate_ids = list(session.exec(stmt).all())
        if not candidate_ids:
            break

        now = utc_now()
        for queue_id in candidate_ids:
            result = session.execute(
                update(KeywordQueueEntry)
                .where(
                    col(KeywordQueueEntry.id) == queue_id,
                    col(KeywordQueueEntry.state) == QueueState.PENDING.value,
                )
                .values(
                    state=QueueState.PROCESSING.value,
                    claimed_at=now,
                    updated_at=now,
                    attempts=KeywordQueueEntry.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(queue_id)
            else:
                logger.debug(f"Entry id={queue_id} claimed by another worker, skipping")
        session.commit()

    if not claimed_ids:
        return []

    entries = list(
        session.exec(
            select(KeywordQueueEntry)
            .where(col(KeywordQueueEntry.id).in_(claimed_ids))
            .order_by(
                col(KeywordQueueEntry.priority).desc(),
                col(KeywordQueueEntry.created_at).asc(),
            )
        ).all()
    )
    logger.info(f"Claimed {len(entries)} entries (limit={limit})")
    return entries


def _owned_claim(queue_id: str, claim_attempts: Optional[int]) -> list:
    """
    WHERE clauses matching a processing entry, and only the claim numbered
    `claim_attempts` when given: a reclaimed and re-claimed entry has a higher
    attempts count, so the earlier holder no longer matches.
    """
    clauses = [
        col(KeywordQueueEntry.id) == queue_id,
        col(KeywordQueueEntry.state) == QueueState.PROCESSING.value,
    ]
    if claim_attempts is not None:
        clauses.append(col(KeywordQueueEntry.attempts) == claim_attempts)
    return clauses


def _finish_entry(
    session: Session,
    queue_id: str,
    state: QueueState,
    error: Optional[str],
    claim_attempts: Optional[int],
) -> bool:
    now = utc_now()
    result = session.execute(
        update(KeywordQueueEntry)
        .where(*_owned_claim(queue_id, claim_attempts))
        .values(state=state.value, finished_at=now, updated_at=now, error_message=error)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def complete_entry(session: Session, queue_id: str, claim_attempts: Optional[int] = None) -> bool:
    """
    Mark a processing entry as completed.

    Args:
        claim_attempts: The entry's attempts value at claim time. When given,
            the update only lands if that claim still holds the entry.

    Returns:
        True if the entry moved to COMPLETED, False if it was not processing
        (already terminal, reclaimed, claimed again, or unknown)
    """
    if _finish_entry(session, queue_id, QueueState.COMPLETED, None, claim_attempts):
        logger.info(f"Completed entry id={queue_id}")
        return True
    logger.debug(f"Entry id={queue_id} not held by this claim, completion ignored")
    return False


def fail_entry(session: Session, queue_id: str, reason: str, claim_attempts: Optional[int] = None) -> bool:
    """
    Mark a processing entry as failed with the reason recorded.

    Returns:
        True if the entry moved to FAILED, False if it was not processing
        (or, with claim_attempts, no longer held by that claim)
    """
    error = reason[:MAX_ERROR_LENGTH]
    if _finish_entry(session, queue_id, QueueState.FAILED, error, claim_attempts):
        logger.warning(f"Failed entry id={queue_id}: {error[:100]}")
        return True
    logger.debug(f"Entry id={queue_id} not held by this claim, failure ignored")
    return False


def release_entry(session: Session, queue_id: str, claim_attempts: Optional[int] = None) -> bool:
    """
    Hand a claimed entry back to pending without spending an attempt.

    Used when the worker never got to call the provider for it.

    Returns:
        True if the entry went back to PENDING
    """
    result = session.execute(
        update(KeywordQueueEntry)
        .where(*_owned_claim(queue_id, claim_attempts))
        .values(
            state=QueueState.PENDING.value,
            claimed_at=None,
            updated_at=utc_now(),
            # claim_batch incremented it, so it is at least 1 here
            attempts=KeywordQueueEntry.attempts - 1,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount == 1:
        logger.info(f"Released entry id={queue_id} back to pending")
        return True
    logger.debug(f"Entry id={queue_id} not held by this claim, release ignored")
    return False


def get_entry(session: Session, queue_id: str) -> Optional[KeywordQueueEntry]:
    return session.get(KeywordQueueEntry, queue_id)


def reclaim_stale_entries(
    session: Session,
    timeout_minutes: int = 30,
    max_attempts: int = 3,
) -> dict[str, int]:
    """
    Return entries stuck in PROCESSING (worker crashed/hung) to the queue.

    Entries that were already claimed `max_attempts` times are failed instead,
    so a keyword that keeps killing workers can't cycle forever.

    Returns:
        Dict with {"reset": N, "failed": N}
    """
    cutoff = utc_now() - timedelta(minutes=timeout_minutes)
    stale = list(
        session.exec(
            select(KeywordQueueEntry).where(
                col(KeywordQueueEntry.state) == QueueState.PROCESSING.value,
                col(KeywordQueueEntry.claimed_at) < cutoff,
            )
        ).all()
    )

    reset = 0
    failed = 0
    now = utc_now()
    for entry in stale:
        exhausted = entry.attempts >= max_attempts
        if exhausted:
            values = {
                "state": QueueState.FAILED.value,
                "finished_at": now,
                "error_message": f"Abandoned after {entry.attempts} claims without finishing",
            }
        else:
            values = {
                "state": QueueState.PENDING.value,
                "claimed_at": None,
                "error_message": f"Claim timed out after {timeout_minutes} minutes",
            }
        result = session.execute(
            update(KeywordQueueEntry)
            .where(
                col(KeywordQueueEntry.id) == entry.id,
                col(KeywordQueueEntry.state) == QueueState.PROCESSING.value,
                col(KeywordQueueEntry.claimed_at) < cutoff,
            )
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            if exhausted:
                failed += 1
            else:
                reset += 1

    session.commit()
    if reset or failed:
        logger.warning(f"Reclaimed stale entries: {reset} reset to pending, {failed} failed")
    return {"reset": reset, "failed": failed}


def count_manual_refreshes(session: Session, user_id: str, since: datetime) -> int:
    """Manual (priority 10) refreshes attributed to a user since `since`."""
    stmt = (
        select(func.count())
        .select_from(KeywordQueueEntry)
        .where(
            col(KeywordQueueEntry.requested_by) == user_id,
            col(KeywordQueueEntry.priority) == MANUAL_PRIORITY,
            col(KeywordQueueEntry.requested_at) >= since,
        )
    )
    return session.exec(stmt).one()


def count_completed_since(session: Session, since: datetime) -> int:
    """Entries completed since `since`. Used for the daily provider budget."""
    stmt = (
        select(func.count())
        .select_from(KeywordQueueEntry)
        .where(
            col(KeywordQueueEntry.state) == QueueState.COMPLETED.value,
            col(KeywordQueueEntry.finished_at) >= since,
        )
    )
    return session.exec(stmt).one()


def get_queue_stats(session: Session) -> dict[str, int]:
    """
    Get queue statistics.

    Returns:
        Dict with counts per state: {"pending": N, "processing": N, ...}
    """
    stats: dict[str, int] = {state.value: 0 for state in QueueState}
    rows = session.exec(
        select(KeywordQueueEntry.state, func.count()).group_by(col(KeywordQueueEntry.state))
    ).all()
    for state, count in rows:
        stats[state] = count
    return stats


def cleanup_old_entries(session: Session, days_to_keep: int = 7) -> dict[str, int]:
    """
    Delete completed and failed entries older than days_to_keep.

    At least one day is always kept: today's manual entries are the quota
    history.

    Returns:
        Dict with {"deleted": N}
    """
    cutoff = utc_now() - timedelta(days=max(days_to_keep, 1))
    result = session.execute(
        delete(KeywordQueueEntry).where(
            col(KeywordQueueEntry.state).in_(TERMINAL_STATES),
            col(KeywordQueueEntry.finished_at) < cutoff,
        )
    )
    session.commit()

    deleted = result.rowcount or 0
    logger.info(f"Cleaned up {deleted} finished entries older than {days_to_keep} days")
    return {"deleted": deleted}


__all__ = [
    "normalize_keyword",
    "normalize_marketplace",
    "clamp_priority",
    "find_live_entry",
    "enqueue_keyword",
    "claim_batch",
    "complete_entry",
    "fail_entry",
    "release_entry",
    "get_entry",
    "reclaim_stale_entries",
    "count_manual_refreshes",
    "count_completed_since",
    "get_queue_stats",
    "cleanup_old_entries",
]
