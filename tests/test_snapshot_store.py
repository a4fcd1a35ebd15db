"""
Tests for snapshot storage and the SQL refresh store.

Tests cover:
1. put_snapshot - create, full overwrite, listing replacement
2. record_search / get_search_count - demand tracking
3. list_due_snapshots - staleness sweep ordering
4. SqlRefreshStore - QueueUnavailable mapping
"""

import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from keyword_snapshots.core.errors import QueueUnavailable
from keyword_snapshots.core.typing import ensure_utc, utc_now
from keyword_snapshots.models.keyword_snapshot import KeywordSnapshot
from keyword_snapshots.services.snapshot_store import (
    get_listings,
    get_search_count,
    get_snapshot,
    list_due_snapshots,
    put_snapshot,
    record_search,
)
from keyword_snapshots.services.store import SqlRefreshStore


def _snapshot(keyword: str = "yoga mat", **overrides) -> KeywordSnapshot:
    values = dict(
        keyword=keyword,
        marketplace="amazon.com",
        avg_price=24.5,
        price_min=10.0,
        price_max=40.0,
        avg_reviews=800,
        median_reviews=650,
        review_density_pct=20,
        brand_concentration_pct=30,
        avg_rating=4.3,
        competitor_count=10,
        listing_count=12,
        has_data=True,
        refresh_priority=6,
        last_updated=utc_now(),
    )
    values.update(overrides)
    return KeywordSnapshot(**values)


class TestPutSnapshot:
    """Tests for put_snapshot."""

    def test_creates_snapshot_with_listings(self, test_session: Session, listing_factory):
        put_snapshot(test_session, _snapshot(), listing_factory(6))

        stored = get_snapshot(test_session, "Yoga Mat", "amazon.com")
        assert stored is not None
        assert stored.avg_price == 24.5
        assert stored.has_data is True

        listings = get_listings(test_session, "yoga mat", "amazon.com")
        assert [listing.position for listing in listings] == [1, 2, 3, 4, 5, 6]

    def test_overwrite_replaces_every_metric(self, test_session: Session, listing_factory):
        first = put_snapshot(test_session, _snapshot(), listing_factory(8))
        created_at = first.created_at

        put_snapshot(
            test_session,
            _snapshot(
                avg_price=None,
                price_min=None,
                price_max=None,
                avg_reviews=None,
                median_reviews=None,
                review_density_pct=None,
                brand_concentration_pct=None,
                avg_rating=None,
                competitor_count=2,
                listing_count=3,
                has_data=False,
                refresh_priority=4,
            ),
            listing_factory(3),
        )

        test_session.expire_all()
        stored = get_snapshot(test_session, "yoga mat", "amazon.com")
        assert stored.has_data is False
        assert stored.avg_price is None
        assert stored.avg_rating is None
        assert stored.refresh_priority == 4
        assert stored.created_at == created_at
        assert len(get_listings(test_session, "yoga mat", "amazon.com")) == 3

    def test_missing_snapshot(self, test_session: Session):
        assert get_snapshot(test_session, "nothing here", "amazon.com") is None
        assert get_listings(test_session, "nothing here", "amazon.com") == []


class TestDemand:
    """Tests for record_search and get_search_count."""

    def test_counts_searches(self, test_session: Session):
        assert get_search_count(test_session, "yoga mat", "amazon.com") == 0

        assert record_search(test_session, "yoga mat", "amazon.com") == 1
        assert record_search(test_session, " YOGA  MAT", "amazon.com") == 2
        assert record_search(test_session, "yoga mat", "amazon.co.uk") == 1

        assert get_search_count(test_session, "yoga mat", "amazon.com") == 2


class TestListDueSnapshots:
    """Tests for list_due_snapshots."""

    def test_only_due_snapshots_most_searched_first(self, test_session: Session):
        now = utc_now()
        # Low tier, 20 days old: due
        put_snapshot(test_session, _snapshot("quiet", refresh_priority=4, last_updated=now - timedelta(days=20)))
        # High tier, 4 days old: due
        put_snapshot(test_session, _snapshot("popular", refresh_priority=9, last_updated=now - timedelta(days=4)))
        # Medium tier, 4 days old: not due yet
        put_snapshot(test_session, _snapshot("recent", refresh_priority=6, last_updated=now - timedelta(days=4)))
        for _ in range(3):
            record_search(test_session, "popular", "amazon.com")

        due = list_due_snapshots(test_session, limit=10, now=now)

        assert [(snapshot.keyword, count) for snapshot, count in due] == [("popular", 3), ("quiet", 0)]

    def test_limit(self, test_session: Session):
        old = utc_now() - timedelta(days=30)
        for i in range(4):
            put_snapshot(test_session, _snapshot(f"keyword {i}", last_updated=old))

        assert len(list_due_snapshots(test_session, limit=2)) == 2
        assert list_due_snapshots(test_session, limit=0) == []


class TestSqlRefreshStore:
    """Tests for the SQL-backed store."""

    def test_round_trip_through_store(self, store: SqlRefreshStore, listing_factory):
        store.put_snapshot(_snapshot(), listing_factory(5))

        snapshot = store.get_snapshot("yoga mat", "amazon.com")
        assert snapshot is not None
        assert ensure_utc(snapshot.last_updated).tzinfo is not None
        assert len(store.get_listings("yoga mat", "amazon.com")) == 5

    def test_enqueue_returns_entry(self, store: SqlRefreshStore):
        entry = store.enqueue("yoga mat", "amazon.com", 6)

        assert entry.id
        assert store.get_entry(entry.id).priority == 6

    def test_operational_error_maps_to_queue_unavailable(self, store: SqlRefreshStore):
        error = OperationalError("SELECT 1", {}, Exception("could not connect to server"))

        with patch("keyword_snapshots.services.store.execute_with_retry", side_effect=error):
            with pytest.raises(QueueUnavailable) as exc_info:
                store.claim_batch(10)

        assert exc_info.value.operation == "claim_batch"
        assert exc_info.value.cause is error
