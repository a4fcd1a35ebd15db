"""
Enrichment provider interface.

A provider turns (keyword, marketplace) into the page-one listings for that
search. Failures are reported with ProviderTransient (retry later) or
ProviderPermanent (don't bother) from core.errors.
"""

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class Listing:
    """One organic search result."""

    asin: str
    position: int  # 1-based
    title: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None
    reviews: Optional[int] = None
    rating: Optional[float] = None


class ListingProvider(Protocol):
    async def fetch_listings(self, keyword: str, marketplace: str) -> list[Listing]: ...
