"""
Manual refresh quota.

Each user may trigger a limited number of manual (priority 10) refreshes per
UTC day. Usage is counted from queue history rather than a separate counter,
so there is nothing to reset at midnight: entries requested before today's
00:00 UTC simply stop matching.

The check does not reserve a slot. Two requests from the same user landing at
the same moment can both pass with the last remaining slot; the overshoot is
bounded by the user's own concurrency.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from keyword_snapshots.core.config import settings
from keyword_snapshots.core.errors import QueueUnavailable
from keyword_snapshots.core.logging_config import get_logger
from keyword_snapshots.core.typing import ensure_utc, next_utc_midnight, start_of_utc_day, utc_now
from keyword_snapshots.services.store import RefreshStore

logger = get_logger(__name__)

RETRY_NEXT_DAY = "next-day"


@dataclass(frozen=True)
class QuotaAllowed:
    remaining: int
    allowed: bool = True


@dataclass(frozen=True)
class QuotaDenied:
    resets_at: datetime
    remaining: int = 0
    retry_policy: str = RETRY_NEXT_DAY
    allowed: bool = False


QuotaDecision = Union[QuotaAllowed, QuotaDenied]


class QuotaGuard:
    """
    Per-user daily ceiling on manual refreshes.

    Args:
        store: Refresh store used to count today's manual entries
        limit: Manual refreshes allowed per user per UTC day
    """

    def __init__(self, store: RefreshStore, limit: Optional[int] = None):
        self.store = store
        self.limit = limit if limit is not None else settings.MAX_MANUAL_REFRESHES_PER_DAY

    def check_and_reserve(self, user_id: str, as_of: Optional[datetime] = None) -> QuotaDecision:
        """
        Decide whether `user_id` may queue one more manual refresh.

        Allowed carries what is left once this request is queued. A failed
        count read lets the request through with the full limit remaining.
        """
        now = ensure_utc(as_of) if as_of is not None else utc_now()
        day_start = start_of_utc_day(now)  # type: ignore[arg-type]

        try:
            used = self.store.count_manual_refreshes(user_id, day_start)
        except (QueueUnavailable, SQLAlchemyError) as e:
            logger.warning("Quota count failed, allowing request", user_id=user_id, error=str(e))
            return QuotaAllowed(remaining=self.limit)

        if used >= self.limit:
            resets_at = next_utc_midnight(now)  # type: ignore[arg-type]
            logger.info("Manual refresh quota exhausted", user_id=user_id, used=used, limit=self.limit)
            return QuotaDenied(resets_at=resets_at)

        return QuotaAllowed(remaining=self.limit - used - 1)


__all__ = [
    "QuotaGuard",
    "QuotaAllowed",
    "QuotaDenied",
    "QuotaDecision",
    "RETRY_NEXT_DAY",
]
