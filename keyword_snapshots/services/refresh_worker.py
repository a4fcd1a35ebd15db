"""
Refresh Worker - drains the keyword queue.

One cycle:
    1. Reclaim entries stuck in processing (crashed/hung workers)
    2. Skip the cycle if the provider circuit takes no calls
    3. Claim up to min(batch size, remaining daily budget) entries, and no more
       than the trial allowance while the circuit is half-open
    4. Fetch, aggregate and store each entry with bounded concurrency. Every
       provider attempt asks the circuit first; an entry it refuses goes back
       to pending without using an attempt

Per-entry outcomes never raise out of the cycle. The only cycle-fatal error is
QueueUnavailable while reading the budget or claiming; the caller (run_forever,
the scheduler job or a one-shot script) logs it and tries again later.

Usage:
    worker = RefreshWorker(store=SqlRefreshStore(engine), provider=RainforestProvider())
    result = await worker.run_cycle()

    # Long-running process
    await worker.run_forever()
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

import structlog

from keyword_snapshots.core.circuit_breaker import CircuitBreaker
from keyword_snapshots.core.config import settings
from keyword_snapshots.core.errors import (
    AggregationInsufficientData,
    ProviderCircuitOpen,
    ProviderPermanent,
    ProviderTransient,
    QueueUnavailable,
    capture_exception,
)
from keyword_snapshots.core.logging_config import get_logger
from keyword_snapshots.core.typing import start_of_utc_day, utc_now
from keyword_snapshots.models.keyword_queue import KeywordQueueEntry
from keyword_snapshots.models.keyword_snapshot import KeywordSnapshot
from keyword_snapshots.provider.base import Listing, ListingProvider
from keyword_snapshots.services.aggregation import MarketMetrics, aggregate_listings
from keyword_snapshots.services.refresh_policy import priority_for
from keyword_snapshots.services.store import RefreshStore

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

OUTCOME_COMPLETED = "completed"
OUTCOME_NO_DATA = "no_data"
OUTCOME_FAILED = "failed"
OUTCOME_DEFERRED = "deferred"  # store error mid-entry, left for reclaim
OUTCOME_RELEASED = "released"  # circuit refused the call, back to pending

SKIP_CIRCUIT_OPEN = "circuit_open"
SKIP_DAILY_BUDGET = "daily_budget"


@dataclass
class CycleResult:
    reclaimed: int = 0
    abandoned: int = 0
    claimed: int = 0
    completed: int = 0
    no_data: int = 0
    failed: int = 0
    deferred: int = 0
    released: int = 0
    skipped: Optional[str] = None

    @property
    def idle(self) -> bool:
        return self.claimed == 0


def build_snapshot(
    entry: KeywordQueueEntry,
    listings: list[Listing],
    metrics: Optional[MarketMetrics],
    refresh_priority: int,
) -> KeywordSnapshot:
    """Full snapshot row for an entry; metrics None gives a "no data" snapshot."""
    return KeywordSnapshot(
        keyword=entry.keyword,
        marketplace=entry.marketplace,
        listing_count=len(listings),
        has_data=metrics is not None,
        refresh_priority=refresh_priority,
        last_updated=utc_now(),
        **(asdict(metrics) if metrics else {}),
    )


class RefreshWorker:
    """
    Claims queue entries and rebuilds their snapshots.

    Args:
        store: Queue and snapshot storage
        provider: Listing provider (Rainforest in production)
        breaker: Provider circuit breaker; a private one is created if omitted
        batch_size: Max entries claimed per cycle
        concurrency: Max provider calls in flight
        max_attempts: Provider attempts per entry within a cycle, also the
            claim count after which a stuck entry is failed
        backoff_base: First retry delay in seconds (doubles per attempt)
        backoff_max: Cap for a single retry delay
        claim_timeout_minutes: Age after which a processing entry is reclaimed
        max_keywords_per_day: Daily cap on completed refreshes
        idle_sleep: Seconds run_forever waits after an empty cycle
        error_backoff: Seconds run_forever waits after a failed cycle
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        store: RefreshStore,
        provider: ListingProvider,
        breaker: Optional[CircuitBreaker] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        claim_timeout_minutes: Optional[int] = None,
        max_keywords_per_day: Optional[int] = None,
        idle_sleep: Optional[float] = None,
        error_backoff: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.breaker = breaker or CircuitBreaker(name="rainforest")
        self.batch_size = batch_size if batch_size is not None else settings.WORKER_BATCH_SIZE
        self.concurrency = max(1, concurrency if concurrency is not None else settings.WORKER_CONCURRENCY)
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.WORKER_MAX_ATTEMPTS)
        self.backoff_base = backoff_base if backoff_base is not None else settings.WORKER_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else settings.WORKER_BACKOFF_MAX_SECONDS
        self.claim_timeout_minutes = (
            claim_timeout_minutes if claim_timeout_minutes is not None else settings.QUEUE_CLAIM_TIMEOUT_MINUTES
        )
        self.max_keywords_per_day = (
            max_keywords_per_day if max_keywords_per_day is not None else settings.MAX_KEYWORDS_PER_DAY
        )
        self.idle_sleep = idle_sleep if idle_sleep is not None else settings.WORKER_IDLE_SLEEP_SECONDS
        self.error_backoff = error_backoff if error_backoff is not None else settings.WORKER_ERROR_BACKOFF_SECONDS
        self.sleep = sleep
        self.shutdown_requested = False

    def request_shutdown(self) -> None:
        """Stop run_forever after the current cycle."""
        self.shutdown_requested = True

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based), honoring a provider Retry-After."""
        delay = self.backoff_base * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.backoff_max)

    def _remaining_budget(self) -> int:
        completed_today = self.store.count_completed_since(start_of_utc_day(utc_now()))
        return self.max_keywords_per_day - completed_today

    async def run_cycle(self) -> CycleResult:
        """
        Run one claim/process cycle.

        Raises:
            QueueUnavailable: the queue could not be read or claimed
        """
        result = CycleResult()

        try:
            reclaimed = self.store.reclaim_stale(self.claim_timeout_minutes, self.max_attempts)
            result.reclaimed = reclaimed.get("reset", 0)
            result.abandoned = reclaimed.get("failed", 0)
        except QueueUnavailable as e:
            logger.warning("Stale reclaim failed", error=str(e))

        available = self.breaker.available_calls()
        if available == 0:
            logger.warning("Provider circuit open, skipping cycle", circuit=self.breaker.name)
            result.skipped = SKIP_CIRCUIT_OPEN
            return result

        limit = min(self.batch_size, self._remaining_budget())
        if limit <= 0:
            logger.info("Daily keyword budget exhausted", max_keywords_per_day=self.max_keywords_per_day)
            result.skipped = SKIP_DAILY_BUDGET
            return result
        if available is not None:
            # Half-open: one trial call per claimed entry at most
            limit = min(limit, available)

        entries = self.store.claim_batch(limit)
        result.claimed = len(entries)
        if not entries:
            return result

        logger.info("Processing batch", claimed=len(entries), limit=limit)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(entry: KeywordQueueEntry) -> str:
            async with semaphore:
                return await self.process_entry(entry)

        outcomes = await asyncio.gather(*(guarded(entry) for entry in entries))
        for outcome in outcomes:
            if outcome == OUTCOME_COMPLETED:
                result.completed += 1
            elif outcome == OUTCOME_NO_DATA:
                result.no_data += 1
            elif outcome == OUTCOME_FAILED:
                result.failed += 1
            elif outcome == OUTCOME_RELEASED:
                result.released += 1
            else:
                result.deferred += 1

        logger.info(
            "Cycle complete",
            claimed=result.claimed,
            completed=result.completed,
            no_data=result.no_data,
            failed=result.failed,
            deferred=result.deferred,
            released=result.released,
        )
        return result

    async def fetch_with_retry(self, entry: KeywordQueueEntry) -> list[Listing]:
        """
        Fetch listings, retrying transient provider errors with capped backoff.

        Raises:
            ProviderTransient: still failing after max_attempts
            ProviderPermanent: on the first permanent error
            ProviderCircuitOpen: the circuit refused the next attempt
        """
        attempt = 0
        while True:
            attempt += 1
            if not self.breaker.allow_request():
                raise ProviderCircuitOpen(self.breaker.name)
            try:
                listings = await self.provider.fetch_listings(entry.keyword, entry.marketplace)
            except ProviderTransient as e:
                self.breaker.record_failure()
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff_delay(attempt, e.retry_after)
                logger.warning(
                    "Transient provider error, retrying",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await self.sleep(delay)
                continue

            self.breaker.record_success()
            if not listings:
                raise ProviderPermanent("Provider returned no listings")
            return listings

    async def process_entry(self, entry: KeywordQueueEntry) -> str:
        """Refresh one claimed entry. Returns an OUTCOME_* value and never raises."""
        with structlog.contextvars.bound_contextvars(queue_id=entry.id, keyword=entry.keyword):
            try:
                return await self._process(entry)
            except Exception as e:
                capture_exception(e, context={"queue_id": entry.id, "keyword": entry.keyword})
                return self._fail(entry, f"{type(e).__name__}: {e}")

    async def _process(self, entry: KeywordQueueEntry) -> str:
        try:
            listings = await self.fetch_with_retry(entry)
        except ProviderPermanent as e:
            return self._fail(entry, f"Permanent provider error: {e}")
        except ProviderTransient as e:
            return self._fail(entry, f"Provider unavailable after {self.max_attempts} attempts: {e}")
        except ProviderCircuitOpen:
            return self._release(entry)

        try:
            metrics: Optional[MarketMetrics] = aggregate_listings(listings)
            outcome = OUTCOME_COMPLETED
        except AggregationInsufficientData as e:
            logger.info("Not enough data for snapshot", usable=e.usable, required=e.required)
            metrics = None
            outcome = OUTCOME_NO_DATA

        try:
            search_count = self.store.get_search_count(entry.keyword, entry.marketplace)
            snapshot = build_snapshot(entry, listings, metrics, priority_for(search_count))
            self.store.put_snapshot(snapshot, listings)
            self.store.complete(entry.id, entry.attempts)
        except QueueUnavailable as e:
            logger.error("Store unavailable mid-entry, leaving it for reclaim", error=str(e))
            return OUTCOME_DEFERRED

        logger.info("Snapshot refreshed", has_data=metrics is not None, listings=len(listings))
        return outcome

    def _fail(self, entry: KeywordQueueEntry, reason: str) -> str:
        try:
            self.store.fail(entry.id, reason, entry.attempts)
        except QueueUnavailable as e:
            logger.error("Could not mark entry failed, leaving it for reclaim", reason=reason, error=str(e))
            return OUTCOME_DEFERRED
        return OUTCOME_FAILED

    def _release(self, entry: KeywordQueueEntry) -> str:
        try:
            self.store.release(entry.id, entry.attempts)
        except QueueUnavailable as e:
            logger.error("Could not release entry, leaving it for reclaim", error=str(e))
            return OUTCOME_DEFERRED
        logger.info("Provider circuit refused the call, entry back to pending", circuit=self.breaker.name)
        return OUTCOME_RELEASED

    async def run_forever(self) -> None:
        """Run cycles until request_shutdown() is called."""
        logger.info("Refresh worker started", batch_size=self.batch_size, concurrency=self.concurrency)

        while not self.shutdown_requested:
            try:
                result = await self.run_cycle()
            except QueueUnavailable as e:
                logger.error("Cycle failed, backing off", error=str(e), backoff=self.error_backoff)
                await self.sleep(self.error_backoff)
                continue
            except Exception as e:
                capture_exception(e, context={"operation": "refresh_cycle"})
                await self.sleep(self.error_backoff)
                continue

            if result.idle and not self.shutdown_requested:
                await self.sleep(self.idle_sleep)

        logger.info("Refresh worker stopped")


__all__ = [
    "RefreshWorker",
    "CycleResult",
    "build_snapshot",
    "OUTCOME_COMPLETED",
    "OUTCOME_NO_DATA",
    "OUTCOME_FAILED",
    "OUTCOME_DEFERRED",
    "OUTCOME_RELEASED",
]
