from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from keyword_snapshots.core.typing import utc_now


class KeywordSnapshot(SQLModel, table=True):
    """Materialized page-one market metrics for a keyword. Written only by the refresh worker."""

    __tablename__ = "keyword_snapshot"

    keyword: str = Field(primary_key=True, max_length=255)
    marketplace: str = Field(primary_key=True, max_length=64)

    # Aggregate metrics (all None when has_data is False)
    avg_price: Optional[float] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    avg_reviews: Optional[int] = None
    median_reviews: Optional[int] = None
    review_density_pct: Optional[int] = None  # % of listings with > 1000 reviews
    brand_concentration_pct: Optional[int] = None  # % share of the most frequent brand
    avg_rating: Optional[float] = None
    competitor_count: int = Field(default=0)  # Listings with a usable price
    listing_count: int = Field(default=0)  # Listings returned by the provider

    # False when the provider returned too few usable listings to aggregate
    has_data: bool = Field(default=True)

    # Refresh cadence tier (see services.refresh_policy)
    refresh_priority: int = Field(default=5, index=True)

    last_updated: datetime = Field(default_factory=utc_now, index=True)
    created_at: datetime = Field(default_factory=utc_now)


class KeywordListing(SQLModel, table=True):
    """Individual provider listing backing a snapshot. Replaced together with the snapshot."""

    __tablename__ = "keyword_listing"

    id: Optional[int] = Field(default=None, primary_key=True)
    keyword: str = Field(max_length=255)
    marketplace: str = Field(max_length=64)
    asin: str = Field(max_length=20, index=True)
    position: int  # 1-based rank on the results page
    title: Optional[str] = None
    brand: Optional[str] = Field(default=None, max_length=255)
    price: Optional[float] = None
    reviews: Optional[int] = None
    rating: Optional[float] = None
    last_updated: datetime = Field(default_factory=utc_now)

    __table_args__ = (Index("ix_keywordlisting_key_position", "keyword", "marketplace", "position"),)


class KeywordDemand(SQLModel, table=True):
    """How often users look a keyword up. Feeds the priority calculator."""

    __tablename__ = "keyword_demand"

    keyword: str = Field(primary_key=True, max_length=255)
    marketplace: str = Field(primary_key=True, max_length=64)
    search_count: int = Field(default=0)
    last_searched_at: datetime = Field(default_factory=utc_now)

    __table_args__ = (Index("ix_keyworddemand_search_count", "search_count"),)
