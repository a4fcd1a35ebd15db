"""
Tests for the refresh worker.

Tests cover:
1. End-to-end refresh of a queued keyword
2. Transient retries with capped backoff, permanent errors, no-data snapshots
3. Circuit breaker gate, half-open trial batches and recovery, daily keyword budget
4. Stale claim reclaim at the start of a cycle
5. run_forever idle sleep, error backoff and shutdown
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from sqlalchemy import update
from sqlmodel import Session, select

from keyword_snapshots.core.circuit_breaker import CircuitBreaker, CircuitState
from keyword_snapshots.core.errors import ProviderPermanent, ProviderTransient, QueueUnavailable
from keyword_snapshots.core.typing import ensure_utc, utc_now
from keyword_snapshots.models.keyword_queue import KeywordQueueEntry, QueueState
from keyword_snapshots.services.refresh import read_snapshot
from keyword_snapshots.services.refresh_policy import is_due
from keyword_snapshots.services.refresh_worker import (
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    RefreshWorker,
)
from keyword_snapshots.services.store import SqlRefreshStore


def _backdate_claim(engine, queue_id: str, minutes: int) -> None:
    with Session(engine) as session:
        session.execute(
            update(KeywordQueueEntry)
            .where(KeywordQueueEntry.id == queue_id)
            .values(claimed_at=utc_now() - timedelta(minutes=minutes))
        )
        session.commit()


class TestBackoffDelay:
    """Tests for RefreshWorker.backoff_delay."""

    def test_doubles_per_attempt(self, worker: RefreshWorker):
        assert [worker.backoff_delay(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self, worker: RefreshWorker):
        assert worker.backoff_delay(10) == 30.0

    def test_retry_after_raises_delay(self, worker: RefreshWorker):
        assert worker.backoff_delay(1, retry_after=12.0) == 12.0
        assert worker.backoff_delay(3, retry_after=1.0) == 8.0
        assert worker.backoff_delay(1, retry_after=600.0) == 30.0


class TestRunCycle:
    """Tests for RefreshWorker.run_cycle."""

    @pytest.mark.asyncio
    async def test_stale_read_to_fresh_snapshot(self, worker, store: SqlRefreshStore, fake_provider, listing_factory):
        for _ in range(9):
            store.record_search("vacuum storage bags", "amazon.com")

        read = read_snapshot(store, "Vacuum Storage Bags", "amazon.com")
        assert read.snapshot is None
        assert read.is_stale is True
        assert store.get_entry(read.refresh_queue_id).priority == 6

        fake_provider.script("vacuum storage bags", listing_factory(8))
        result = await worker.run_cycle()

        assert result.claimed == 1
        assert result.completed == 1
        assert store.get_entry(read.refresh_queue_id).state == QueueState.COMPLETED.value

        snapshot = store.get_snapshot("vacuum storage bags", "amazon.com")
        assert snapshot.has_data is True
        assert snapshot.listing_count == 8
        assert snapshot.refresh_priority == 6
        assert utc_now() - ensure_utc(snapshot.last_updated) < timedelta(minutes=1)
        assert is_due(snapshot.last_updated, snapshot.refresh_priority) is False
        assert len(store.get_listings("vacuum storage bags", "amazon.com")) == 8

        again = read_snapshot(store, "vacuum storage bags", "amazon.com")
        assert again.is_stale is False
        assert again.refresh_queue_id is None

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_attempts(self, worker, store, fake_provider, fake_sleep):
        entry = store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", ProviderTransient("timeout"))

        result = await worker.run_cycle()

        assert result.failed == 1
        assert len(fake_provider.calls) == 3
        assert fake_sleep.delays == [2.0, 4.0]
        failed = store.get_entry(entry.id)
        assert failed.state == QueueState.FAILED.value
        assert "after 3 attempts" in failed.error_message
        assert store.get_snapshot("yoga mat", "amazon.com") is None

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_existing_snapshot(self, worker, store, fake_provider, listing_factory):
        store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", listing_factory(8))
        await worker.run_cycle()
        before = store.get_snapshot("yoga mat", "amazon.com")

        store.enqueue("yoga mat", "amazon.com", 10, requested_by="user-1")
        fake_provider.script("yoga mat", ProviderTransient("rate limited", status_code=429))
        result = await worker.run_cycle()

        assert result.failed == 1
        after = store.get_snapshot("yoga mat", "amazon.com")
        assert after.last_updated == before.last_updated
        assert after.avg_price == before.avg_price

    @pytest.mark.asyncio
    async def test_transient_then_success(self, worker, store, fake_provider, fake_sleep, breaker, listing_factory):
        store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script(
            "yoga mat",
            ProviderTransient("rate limited", status_code=429, retry_after=10.0),
            listing_factory(6),
        )

        result = await worker.run_cycle()

        assert result.completed == 1
        assert fake_sleep.delays == [10.0]
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_permanent_error_fails_without_retry(self, worker, store, fake_provider, fake_sleep):
        entry = store.enqueue("zzqxv", "amazon.com", 6)
        fake_provider.script("zzqxv", ProviderPermanent("No results"))

        result = await worker.run_cycle()

        assert result.failed == 1
        assert len(fake_provider.calls) == 1
        assert fake_sleep.delays == []
        assert store.get_entry(entry.id).error_message.startswith("Permanent provider error")

    @pytest.mark.asyncio
    async def test_insufficient_data_writes_no_data_snapshot(self, worker, store, fake_provider, listing_factory):
        entry = store.enqueue("rare widget", "amazon.com", 6)
        fake_provider.script("rare widget", listing_factory(3))

        result = await worker.run_cycle()

        assert result.no_data == 1
        assert store.get_entry(entry.id).state == QueueState.COMPLETED.value
        snapshot = store.get_snapshot("rare widget", "amazon.com")
        assert snapshot.has_data is False
        assert snapshot.avg_price is None
        assert snapshot.listing_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_entry(self, worker, store, fake_provider):
        entry = store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", RuntimeError("boom"))

        result = await worker.run_cycle()

        assert result.failed == 1
        assert store.get_entry(entry.id).error_message == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_store_outage_mid_entry_is_deferred(self, worker, store, fake_provider, listing_factory):
        entry = store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", listing_factory(6))

        with patch.object(store, "put_snapshot", side_effect=QueueUnavailable("put_snapshot")):
            result = await worker.run_cycle()

        assert result.deferred == 1
        assert store.get_entry(entry.id).state == QueueState.PROCESSING.value

    @pytest.mark.asyncio
    async def test_processes_batch_in_priority_order(self, worker, store, fake_provider, listing_factory):
        worker.concurrency = 1
        for keyword, priority in (("low", 4), ("manual", 10), ("medium", 6)):
            store.enqueue(keyword, "amazon.com", priority)
            fake_provider.script(keyword, listing_factory(6))

        result = await worker.run_cycle()

        assert result.completed == 3
        assert [keyword for keyword, _ in fake_provider.calls] == ["manual", "medium", "low"]

    @pytest.mark.asyncio
    async def test_idle_cycle(self, worker, fake_provider):
        result = await worker.run_cycle()

        assert result.idle is True
        assert result.skipped is None
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_open_circuit_skips_cycle(self, store, fake_provider, fake_sleep):
        breaker = CircuitBreaker(name="tripped", failure_threshold=1)
        breaker.record_failure()
        worker = RefreshWorker(store=store, provider=fake_provider, breaker=breaker, sleep=fake_sleep)
        entry = store.enqueue("yoga mat", "amazon.com", 6)

        result = await worker.run_cycle()

        assert result.skipped == "circuit_open"
        assert result.claimed == 0
        assert store.get_entry(entry.id).state == QueueState.PENDING.value

    @pytest.mark.asyncio
    async def test_transient_errors_trip_circuit(self, store, fake_provider, fake_sleep):
        breaker = CircuitBreaker(name="fragile", failure_threshold=3)
        worker = RefreshWorker(store=store, provider=fake_provider, breaker=breaker, max_attempts=3, sleep=fake_sleep)
        store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", ProviderTransient("503", status_code=503))

        await worker.run_cycle()

        assert breaker.allow_request() is False

    @pytest.mark.asyncio
    async def test_daily_budget(self, worker, store, fake_provider, listing_factory):
        worker.max_keywords_per_day = 1
        for keyword in ("first", "second"):
            store.enqueue(keyword, "amazon.com", 6)
            fake_provider.script(keyword, listing_factory(6))

        first = await worker.run_cycle()
        second = await worker.run_cycle()

        assert first.claimed == 1
        assert first.completed == 1
        assert second.skipped == "daily_budget"
        assert store.queue_stats()["pending"] == 1

    @pytest.mark.asyncio
    async def test_reclaims_stale_claims_first(self, worker, store, test_engine, fake_provider, listing_factory):
        entry = store.enqueue("yoga mat", "amazon.com", 6)
        store.claim_batch(1)
        _backdate_claim(test_engine, entry.id, minutes=45)
        fake_provider.script("yoga mat", listing_factory(6))

        result = await worker.run_cycle()

        assert result.reclaimed == 1
        assert result.completed == 1
        reclaimed = store.get_entry(entry.id)
        assert reclaimed.state == QueueState.COMPLETED.value
        assert reclaimed.attempts == 2

    @pytest.mark.asyncio
    async def test_abandons_entry_after_max_claims(self, worker, store, test_engine):
        entry = store.enqueue("poison", "amazon.com", 6)
        for _ in range(3):
            store.claim_batch(1)
            _backdate_claim(test_engine, entry.id, minutes=45)
            if store.get_entry(entry.id).attempts < 3:
                store.reclaim_stale(30, 3)

        result = await worker.run_cycle()

        assert result.abandoned == 1
        assert store.get_entry(entry.id).state == QueueState.FAILED.value


class TestCircuitRecovery:
    """Tests for the worker while the provider circuit recovers."""

    @pytest.fixture
    def recovering(self) -> CircuitBreaker:
        breaker = CircuitBreaker(name="recovering", failure_threshold=1, recovery_timeout=60.0, half_open_max_calls=3)
        breaker.record_failure()
        breaker._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)
        return breaker

    @pytest.fixture
    def recovering_worker(self, worker: RefreshWorker, recovering: CircuitBreaker) -> RefreshWorker:
        worker.breaker = recovering
        return worker

    @pytest.mark.asyncio
    async def test_idle_cycles_keep_trial_allowance(
        self, recovering_worker, recovering, store, fake_provider, listing_factory
    ):
        for _ in range(5):
            result = await recovering_worker.run_cycle()
            assert result.skipped is None
            assert result.claimed == 0

        assert recovering.state == CircuitState.HALF_OPEN
        assert recovering.available_calls() == 3

        entry = store.enqueue("vacuum storage bags", "amazon.com", 6)
        fake_provider.script("vacuum storage bags", listing_factory(8))
        result = await recovering_worker.run_cycle()

        assert result.claimed == 1
        assert result.completed == 1
        assert store.get_entry(entry.id).state == QueueState.COMPLETED.value

    @pytest.mark.asyncio
    async def test_trial_batch_capped_and_failure_releases_rest(self, recovering_worker, recovering, store, fake_provider):
        for i in range(10):
            store.enqueue(f"keyword {i}", "amazon.com", 6)
            fake_provider.script(f"keyword {i}", ProviderTransient("503", status_code=503))

        result = await recovering_worker.run_cycle()

        assert result.claimed == 3
        assert len(fake_provider.calls) <= 3
        assert result.failed == 0
        assert result.released == 3
        assert recovering.state == CircuitState.OPEN
        stats = store.queue_stats()
        assert stats["pending"] == 10
        assert stats["failed"] == 0

        with Session(store.engine) as session:
            attempts = session.exec(select(KeywordQueueEntry.attempts)).all()
        assert set(attempts) == {0}

    @pytest.mark.asyncio
    async def test_recovery_then_new_entry_processed(
        self, recovering_worker, recovering, store, fake_provider, listing_factory
    ):
        for keyword in ("first", "second", "third"):
            store.enqueue(keyword, "amazon.com", 6)
            fake_provider.script(keyword, listing_factory(6))

        trial = await recovering_worker.run_cycle()

        assert trial.completed == 3
        assert recovering.state == CircuitState.CLOSED

        store.enqueue("desk lamp", "amazon.com", 10, requested_by="user-1")
        fake_provider.script("desk lamp", listing_factory(6))
        after = await recovering_worker.run_cycle()

        assert after.claimed == 1
        assert after.completed == 1
        assert store.get_snapshot("desk lamp", "amazon.com").has_data is True

    @pytest.mark.asyncio
    async def test_circuit_opening_mid_retry_releases_entry(self, store, fake_provider, fake_sleep):
        breaker = CircuitBreaker(name="fragile", failure_threshold=2)
        worker = RefreshWorker(store=store, provider=fake_provider, breaker=breaker, max_attempts=3, sleep=fake_sleep)
        entry = store.enqueue("yoga mat", "amazon.com", 6)
        fake_provider.script("yoga mat", ProviderTransient("503", status_code=503))

        result = await worker.run_cycle()

        assert len(fake_provider.calls) == 2
        assert result.released == 1
        released = store.get_entry(entry.id)
        assert released.state == QueueState.PENDING.value
        assert released.attempts == 0


class TestProcessEntry:
    """Tests for RefreshWorker.process_entry edge cases."""

    @pytest.mark.asyncio
    async def test_fail_during_outage_is_deferred(self, worker, store, fake_provider):
        store.enqueue("yoga mat", "amazon.com", 6)
        (entry,) = store.claim_batch(1)
        fake_provider.script("yoga mat", ProviderPermanent("bad keyword"))

        with patch.object(store, "fail", side_effect=QueueUnavailable("fail")):
            assert await worker.process_entry(entry) == OUTCOME_DEFERRED

    @pytest.mark.asyncio
    async def test_empty_listing_list_is_permanent(self, worker, store, fake_provider):
        store.enqueue("yoga mat", "amazon.com", 6)
        (entry,) = store.claim_batch(1)
        fake_provider.script("yoga mat", [])

        assert await worker.process_entry(entry) == OUTCOME_FAILED


class TestRunForever:
    """Tests for RefreshWorker.run_forever."""

    @pytest.mark.asyncio
    async def test_idle_sleep_then_shutdown(self, worker):
        delays = []

        async def sleep_and_stop(seconds: float) -> None:
            delays.append(seconds)
            worker.request_shutdown()

        worker.sleep = sleep_and_stop
        await worker.run_forever()

        assert delays == [60.0]

    @pytest.mark.asyncio
    async def test_backs_off_when_queue_unavailable(self, worker, store):
        delays = []

        async def sleep_and_stop(seconds: float) -> None:
            delays.append(seconds)
            worker.request_shutdown()

        worker.sleep = sleep_and_stop
        with patch.object(store, "claim_batch", side_effect=QueueUnavailable("claim_batch")):
            await worker.run_forever()

        assert delays == [120.0]

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, worker, fake_provider):
        worker.request_shutdown()

        await worker.run_forever()

        assert fake_provider.calls == []
