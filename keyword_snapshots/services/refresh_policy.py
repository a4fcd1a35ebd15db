"""
Refresh Policy

Decides when a keyword snapshot should be rebuilt and how urgently.

Tiers (by snapshot refresh priority):
    priority >= 8   -> every 3 days
    priority 5-7    -> every 7 days
    priority < 5    -> every 14 days

System refresh priority is derived from observed demand (search count) and
always lands in 4..9. Manual refreshes skip this and run at 10.
"""

from datetime import datetime, timedelta
from typing import Optional

from keyword_snapshots.core.typing import ensure_utc, utc_now

HIGH_PRIORITY_THRESHOLD = 8
MEDIUM_PRIORITY_THRESHOLD = 5

REFRESH_INTERVAL_DAYS = {
    "high": 3,
    "medium": 7,
    "low": 14,
}

# (minimum demand, priority), checked top-down
DEMAND_PRIORITY_STEPS = (
    (100, 9),
    (50, 8),
    (20, 7),
    (10, 6),
    (5, 5),
)
BASELINE_PRIORITY = 4


def refresh_tier(priority: int) -> str:
    if priority >= HIGH_PRIORITY_THRESHOLD:
        return "high"
    if priority >= MEDIUM_PRIORITY_THRESHOLD:
        return "medium"
    return "low"


def refresh_interval(priority: int) -> timedelta:
    """Maximum snapshot age allowed for a priority tier."""
    return timedelta(days=REFRESH_INTERVAL_DAYS[refresh_tier(priority)])


def is_due(last_updated: Optional[datetime], priority: int, now: Optional[datetime] = None) -> bool:
    """
    True when a snapshot should be refreshed.

    A snapshot that was never built is always due. Otherwise it is due once its
    age reaches the tier interval. Naive timestamps are read as UTC.
    """
    if last_updated is None:
        return True

    current = ensure_utc(now) if now is not None else utc_now()
    age = current - ensure_utc(last_updated)  # type: ignore[operator]
    return age >= refresh_interval(priority)


def priority_for(observed_demand: int) -> int:
    """Map search demand to a system refresh priority in [4, 9]."""
    demand = max(observed_demand, 0)
    for minimum, priority in DEMAND_PRIORITY_STEPS:
        if demand >= minimum:
            return priority
    return BASELINE_PRIORITY


__all__ = [
    "refresh_tier",
    "refresh_interval",
    "is_due",
    "priority_for",
    "REFRESH_INTERVAL_DAYS",
]
