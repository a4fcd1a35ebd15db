"""
Snapshot store access.

Reads are plain selects and never wait on the worker. Writes replace the
snapshot row and its listing rows in one transaction, so a reader sees either
the previous version or the new one, never a mix.

Demand counting (record_search) lives here too but writes only to
keyword_demand; snapshot rows are written by the refresh worker alone.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from keyword_snapshots.core.typing import col, ensure_utc, utc_now
from keyword_snapshots.models.keyword_snapshot import KeywordDemand, KeywordListing, KeywordSnapshot
from keyword_snapshots.provider.base import Listing
from keyword_snapshots.services.keyword_queue import normalize_keyword, normalize_marketplace
from keyword_snapshots.services.refresh_policy import REFRESH_INTERVAL_DAYS, is_due

logger = logging.getLogger(__name__)

# Metric columns copied on overwrite; the key and created_at are kept
SNAPSHOT_FIELDS = (
    "avg_price",
    "price_min",
    "price_max",
    "avg_reviews",
    "median_reviews",
    "review_density_pct",
    "brand_concentration_pct",
    "avg_rating",
    "competitor_count",
    "listing_count",
    "has_data",
    "refresh_priority",
    "last_updated",
)


def get_snapshot(session: Session, keyword: str, marketplace: str) -> Optional[KeywordSnapshot]:
    return session.get(KeywordSnapshot, (normalize_keyword(keyword), normalize_marketplace(marketplace)))


def get_listings(session: Session, keyword: str, marketplace: str) -> list[KeywordListing]:
    stmt = (
        select(KeywordListing)
        .where(
            col(KeywordListing.keyword) == normalize_keyword(keyword),
            col(KeywordListing.marketplace) == normalize_marketplace(marketplace),
        )
        .order_by(col(KeywordListing.position).asc())
    )
    return list(session.exec(stmt).all())


def put_snapshot(
    session: Session,
    snapshot: KeywordSnapshot,
    listings: Sequence[Listing] = (),
) -> KeywordSnapshot:
    """
    Overwrite the snapshot for its (keyword, marketplace) along with its listings.

    The existing row keeps its created_at; every metric column is replaced,
    including ones that become None (a "no data" snapshot clears old metrics).
    Listing rows for the key are deleted and re-inserted.

    Returns:
        The stored snapshot
    """
    keyword = normalize_keyword(snapshot.keyword)
    marketplace = normalize_marketplace(snapshot.marketplace)
    now = utc_now()

    existing = session.get(KeywordSnapshot, (keyword, marketplace))
    if existing:
        for field in SNAPSHOT_FIELDS:
            setattr(existing, field, getattr(snapshot, field))
        stored = existing
    else:
        stored = KeywordSnapshot(
            keyword=keyword,
            marketplace=marketplace,
            created_at=now,
            **{field: getattr(snapshot, field) for field in SNAPSHOT_FIELDS},
        )
    if stored.last_updated is None:
        stored.last_updated = now
    session.add(stored)

    session.execute(
        delete(KeywordListing).where(
            col(KeywordListing.keyword) == keyword,
            col(KeywordListing.marketplace) == marketplace,
        )
    )
    for listing in listings:
        session.add(
            KeywordListing(
                keyword=keyword,
                marketplace=marketplace,
                asin=listing.asin,
                position=listing.position,
                title=listing.title,
                brand=listing.brand,
                price=listing.price,
                reviews=listing.reviews,
                rating=listing.rating,
                last_updated=stored.last_updated,
            )
        )

    session.commit()
    session.refresh(stored)
    logger.info(
        f"Stored snapshot for '{keyword}' ({marketplace}): "
        f"has_data={stored.has_data}, listings={len(listings)}"
    )
    return stored


def get_search_count(session: Session, keyword: str, marketplace: str) -> int:
    demand = session.get(KeywordDemand, (normalize_keyword(keyword), normalize_marketplace(marketplace)))
    return demand.search_count if demand else 0


def record_search(session: Session, keyword: str, marketplace: str) -> int:
    """
    Count one lookup of a keyword.

    Returns:
        The search count after this lookup
    """
    keyword = normalize_keyword(keyword)
    marketplace = normalize_marketplace(marketplace)

    for _ in range(2):
        now = utc_now()
        result = session.execute(
            update(KeywordDemand)
            .where(
                col(KeywordDemand.keyword) == keyword,
                col(KeywordDemand.marketplace) == marketplace,
            )
            .values(search_count=KeywordDemand.search_count + 1, last_searched_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            session.commit()
            return get_search_count(session, keyword, marketplace)

        session.add(KeywordDemand(keyword=keyword, marketplace=marketplace, search_count=1, last_searched_at=now))
        try:
            session.commit()
        except IntegrityError:
            # First lookup raced with another process; count on top of its row
            session.rollback()
            continue
        return 1

    return get_search_count(session, keyword, marketplace)


def list_due_snapshots(
    session: Session,
    limit: int,
    now: Optional[datetime] = None,
) -> list[tuple[KeywordSnapshot, int]]:
    """
    Snapshots whose refresh interval has elapsed, most searched first.

    Returns:
        List of (snapshot, search_count) pairs, at most `limit` long
    """
    if limit <= 0:
        return []

    current = ensure_utc(now) if now is not None else utc_now()
    # Nothing younger than the shortest interval can be due
    horizon = current - timedelta(days=min(REFRESH_INTERVAL_DAYS.values()))
    search_count = func.coalesce(KeywordDemand.search_count, 0)

    stmt = (
        select(KeywordSnapshot, search_count)
        .outerjoin(
            KeywordDemand,
            and_(
                col(KeywordDemand.keyword) == col(KeywordSnapshot.keyword),
                col(KeywordDemand.marketplace) == col(KeywordSnapshot.marketplace),
            ),
        )
        .where(col(KeywordSnapshot.last_updated) <= horizon)
        .order_by(search_count.desc(), col(KeywordSnapshot.last_updated).asc())
    )

    due: list[tuple[KeywordSnapshot, int]] = []
    for snapshot, count in session.exec(stmt):
        if is_due(snapshot.last_updated, snapshot.refresh_priority, now=current):
            due.append((snapshot, count))
            if len(due) >= limit:
                break
    return due


__all__ = [
    "get_snapshot",
    "get_listings",
    "put_snapshot",
    "get_search_count",
    "record_search",
    "list_due_snapshots",
]
