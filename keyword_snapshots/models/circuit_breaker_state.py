from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from keyword_snapshots.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    """
    Last known state of a provider circuit, one row per circuit name.

    Every worker process reads it when its breaker is created, so a restart or
    a second worker does not start hammering a provider that just tripped.
    """

    __tablename__ = "circuit_breaker_state"

    name: str = Field(primary_key=True, max_length=64)  # e.g. "rainforest"
    state: str = Field(default="closed", max_length=16)  # closed | open | half_open
    failure_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)
