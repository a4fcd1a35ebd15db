"""
Keyword snapshot endpoints.

GET  /keywords/snapshot            current snapshot, queues a refresh when stale
POST /keywords/refresh             manual refresh (quota limited)
GET  /keywords/refresh/{queue_id}  state of a queued refresh
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from keyword_snapshots.api import deps
from keyword_snapshots.core.config import settings
from keyword_snapshots.core.errors import QueueUnavailable, QuotaExceeded
from keyword_snapshots.core.typing import ensure_utc
from keyword_snapshots.models.keyword_snapshot import KeywordSnapshot
from keyword_snapshots.services.quota import QuotaGuard, RETRY_NEXT_DAY
from keyword_snapshots.services.refresh import read_snapshot, request_manual_refresh
from keyword_snapshots.services.store import RefreshStore

router = APIRouter()


class SnapshotOut(BaseModel):
    avg_price: Optional[float] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    avg_reviews: Optional[int] = None
    median_reviews: Optional[int] = None
    review_density_pct: Optional[int] = None
    brand_concentration_pct: Optional[int] = None
    avg_rating: Optional[float] = None
    competitor_count: int = 0
    listing_count: int = 0
    has_data: bool = True
    refresh_priority: int
    last_updated: datetime

    @classmethod
    def from_model(cls, snapshot: KeywordSnapshot) -> "SnapshotOut":
        data = snapshot.model_dump(exclude={"keyword", "marketplace", "created_at"})
        data["last_updated"] = ensure_utc(snapshot.last_updated)
        return cls(**data)


class ListingOut(BaseModel):
    asin: str
    position: int
    title: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None
    reviews: Optional[int] = None
    rating: Optional[float] = None


class SnapshotResponse(BaseModel):
    keyword: str
    marketplace: str
    snapshot: Optional[SnapshotOut] = None
    listings: Optional[List[ListingOut]] = None
    is_stale: bool
    refresh_queue_id: Optional[str] = None


class RefreshRequest(BaseModel):
    keyword: str = Field(min_length=1, max_length=255)
    marketplace: Optional[str] = Field(default=None, max_length=64)


class RefreshResponse(BaseModel):
    queue_id: str
    quota_remaining: int
    queued_at: datetime


class QueueEntryStatus(BaseModel):
    queue_id: str
    keyword: str
    marketplace: str
    state: str
    priority: int
    attempts: int
    error_message: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


@router.get("/snapshot", response_model=SnapshotResponse)
def get_keyword_snapshot(
    keyword: str = Query(..., min_length=1, max_length=255),
    marketplace: Optional[str] = Query(default=None, max_length=64),
    include_listings: bool = Query(default=False),
    store: RefreshStore = Depends(deps.get_refresh_store),
) -> SnapshotResponse:
    """
    Serve the stored snapshot for a keyword without waiting on the worker.

    When the snapshot is missing or stale a refresh is queued and its id
    returned in refresh_queue_id; the response still carries the old data.
    """
    try:
        result = read_snapshot(store, keyword, marketplace or settings.DEFAULT_MARKETPLACE)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except QueueUnavailable:
        raise deps.queue_unavailable()

    listings = None
    if include_listings and result.snapshot is not None:
        try:
            rows = store.get_listings(result.keyword, result.marketplace)
        except QueueUnavailable:
            raise deps.queue_unavailable()
        listings = [ListingOut(**row.model_dump(include=set(ListingOut.model_fields))) for row in rows]

    return SnapshotResponse(
        keyword=result.keyword,
        marketplace=result.marketplace,
        snapshot=SnapshotOut.from_model(result.snapshot) if result.snapshot else None,
        listings=listings,
        is_stale=result.is_stale,
        refresh_queue_id=result.refresh_queue_id,
    )


@router.post("/refresh", response_model=RefreshResponse, status_code=status.HTTP_202_ACCEPTED)
def refresh_keyword(
    body: RefreshRequest,
    user_id: str = Depends(deps.get_current_user_id),
    store: RefreshStore = Depends(deps.get_refresh_store),
    guard: QuotaGuard = Depends(deps.get_quota_guard),
) -> RefreshResponse:
    """Queue a manual refresh at top priority. Limited per user per UTC day."""
    try:
        queued = request_manual_refresh(
            store,
            guard,
            body.keyword,
            body.marketplace or settings.DEFAULT_MARKETPLACE,
            user_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except QuotaExceeded as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": str(e),
                "quota_remaining": e.remaining,
                "retry_policy": RETRY_NEXT_DAY,
                "resets_at": e.resets_at.isoformat(),
            },
        )
    except QueueUnavailable:
        raise deps.queue_unavailable()

    return RefreshResponse(
        queue_id=queued.queue_id,
        quota_remaining=queued.quota_remaining,
        queued_at=queued.queued_at,
    )


@router.get("/refresh/{queue_id}", response_model=QueueEntryStatus)
def get_refresh_status(
    queue_id: str,
    store: RefreshStore = Depends(deps.get_refresh_store),
) -> QueueEntryStatus:
    try:
        entry = store.get_entry(queue_id)
    except QueueUnavailable:
        raise deps.queue_unavailable()
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue entry not found")

    return QueueEntryStatus(
        queue_id=entry.id,
        keyword=entry.keyword,
        marketplace=entry.marketplace,
        state=entry.state,
        priority=entry.priority,
        attempts=entry.attempts,
        error_message=entry.error_message,
        created_at=ensure_utc(entry.created_at),
        finished_at=ensure_utc(entry.finished_at),
    )
