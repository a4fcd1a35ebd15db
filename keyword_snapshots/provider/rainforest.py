"""
Rainforest API client.

Fetches the page-one organic results for a keyword search. One search costs
one provider credit, so this module never retries by itself: the refresh
worker owns retry and backoff.

Error mapping:
    timeout / network error / 429 / 5xx  -> ProviderTransient (429 carries Retry-After)
    other 4xx / error payload / no ASINs -> ProviderPermanent
"""

import re
from typing import Any, Dict, Optional

import httpx

from keyword_snapshots.core.config import settings
from keyword_snapshots.core.errors import ProviderPermanent, ProviderTransient
from keyword_snapshots.core.logging_config import get_logger
from keyword_snapshots.provider.base import Listing

logger = get_logger(__name__)

# Result arrays the search endpoint may populate, merged in this order
RESULT_KEYS = ("search_results", "organic_results", "results")

# First number in a display string; thousands separators allowed
_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?|\.\d+")


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER.search(value)
        if match is None:
            return None
        return float(match.group().replace(",", ""))
    return None


def parse_price(item: Dict[str, Any]) -> Optional[float]:
    """
    Price from a search result.

    Handles {"price": {"value": 12.99}}, {"price": {"raw": "$12.99"}},
    a bare number and a bare string.
    """
    price = item.get("price")
    if isinstance(price, dict):
        if price.get("value"):
            return _to_float(price["value"])
        if price.get("raw"):
            return _to_float(price["raw"])
        return None
    return _to_float(price)


def parse_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def extract_listings(data: Dict[str, Any], max_listings: int) -> list[Listing]:
    """Organic results with an ASIN, sponsored entries dropped, capped at max_listings."""
    merged: list[Dict[str, Any]] = []
    for key in RESULT_KEYS:
        results = data.get(key)
        if isinstance(results, list) and results:
            merged.extend(results)

    listings: list[Listing] = []
    for item in merged:
        if not isinstance(item, dict) or not item.get("asin") or item.get("sponsored"):
            continue
        listings.append(
            Listing(
                asin=str(item["asin"]),
                position=len(listings) + 1,
                title=item.get("title"),
                brand=item.get("brand"),
                price=parse_price(item),
                reviews=parse_int(item.get("ratings_total", item.get("reviews"))),
                rating=_to_float(item.get("rating")),
            )
        )
        if len(listings) >= max_listings:
            break
    return listings


class RainforestProvider:
    """
    Keyword search provider backed by Rainforest API.

    Args:
        api_key: Rainforest API key
        base_url: API base URL
        timeout: Request timeout in seconds
        max_listings: Maximum listings kept per search
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_listings: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RAINFOREST_API_KEY
        self.base_url = (base_url or settings.RAINFOREST_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self.max_listings = max_listings if max_listings is not None else settings.PROVIDER_MAX_LISTINGS
        self.transport = transport

    async def fetch_listings(self, keyword: str, marketplace: str) -> list[Listing]:
        if not self.api_key:
            raise ProviderPermanent("Rainforest API key not configured")
        if not keyword.strip():
            raise ProviderPermanent("Keyword is empty")

        params = {
            "api_key": self.api_key,
            "type": "search",
            "amazon_domain": marketplace,
            "search_term": keyword,
            "page": 1,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    f"{self.base_url}/request",
                    params=params,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise ProviderTransient(f"Search request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransient(f"Search request failed: {e}") from e

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise ProviderTransient("Search API rate limited", status_code=status, retry_after=retry_after)
        if status >= 500:
            raise ProviderTransient(f"Search API error: {status}", status_code=status)
        if status >= 400:
            raise ProviderPermanent(f"Search API error: {status}", status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderTransient(f"Search API returned invalid JSON: {e}", status_code=status) from e

        if not isinstance(data, dict):
            raise ProviderPermanent("Search API returned an unexpected payload", status_code=status)
        if data.get("error"):
            raise ProviderPermanent(f"Search API error: {data['error']}", status_code=status)

        listings = extract_listings(data, self.max_listings)
        if not listings:
            raise ProviderPermanent("No ASINs found in search results", status_code=status)

        logger.info("Fetched listings", keyword=keyword, marketplace=marketplace, count=len(listings))
        return listings


__all__ = [
    "RainforestProvider",
    "extract_listings",
    "parse_price",
    "parse_retry_after",
]
