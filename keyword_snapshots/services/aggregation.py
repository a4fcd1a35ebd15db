"""
Keyword market aggregation.

Computes page-one market metrics from provider listings. Only listings with a
positive price count; with fewer than MIN_PRICED_LISTINGS of those no metrics
are produced.
"""

from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from statistics import median
from typing import Sequence

from keyword_snapshots.core.errors import AggregationInsufficientData
from keyword_snapshots.provider.base import Listing

MIN_PRICED_LISTINGS = 5
HIGH_REVIEW_THRESHOLD = 1000
UNKNOWN_BRAND = "unknown"


@dataclass
class MarketMetrics:
    avg_price: float
    price_min: float
    price_max: float
    avg_reviews: int
    median_reviews: int
    review_density_pct: int
    competitor_count: int
    brand_concentration_pct: int
    avg_rating: float


def _round_half_up(value: float, places: int = 0) -> float:
    # .5 rounds away from zero, not to even
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _round_int(value: float) -> int:
    return int(_round_half_up(value))


def aggregate_listings(listings: Sequence[Listing]) -> MarketMetrics:
    """
    Aggregate listings into market metrics.

    Raises:
        AggregationInsufficientData: fewer than 5 listings with price > 0
    """
    priced = [listing for listing in listings if listing.price is not None and listing.price > 0]
    if len(priced) < MIN_PRICED_LISTINGS:
        raise AggregationInsufficientData(usable=len(priced), required=MIN_PRICED_LISTINGS)

    prices = [listing.price for listing in priced]
    reviews = [listing.reviews for listing in priced if listing.reviews is not None and listing.reviews >= 0]
    ratings = [listing.rating for listing in priced if listing.rating is not None and listing.rating > 0]

    avg_reviews = sum(reviews) / len(reviews) if reviews else 0
    median_reviews = median(reviews) if reviews else 0
    high_review_count = sum(1 for listing in priced if (listing.reviews or 0) > HIGH_REVIEW_THRESHOLD)

    brands = Counter((listing.brand or UNKNOWN_BRAND).strip().lower() or UNKNOWN_BRAND for listing in priced)
    top_brand_count = brands.most_common(1)[0][1]

    avg_rating = sum(ratings) / len(ratings) if ratings else 0.0

    return MarketMetrics(
        avg_price=_round_half_up(sum(prices) / len(prices), 2),  # type: ignore[arg-type]
        price_min=_round_half_up(min(prices), 2),  # type: ignore[type-var]
        price_max=_round_half_up(max(prices), 2),  # type: ignore[type-var]
        avg_reviews=_round_int(avg_reviews),
        median_reviews=_round_int(median_reviews),
        review_density_pct=_round_int(high_review_count / len(priced) * 100),
        competitor_count=len(priced),
        brand_concentration_pct=_round_int(top_brand_count / len(priced) * 100),
        avg_rating=_round_half_up(avg_rating, 1),
    )


__all__ = [
    "MarketMetrics",
    "aggregate_listings",
    "MIN_PRICED_LISTINGS",
]
