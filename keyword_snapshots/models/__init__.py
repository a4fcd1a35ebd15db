from .keyword_queue import KeywordQueueEntry, QueueState
from .keyword_snapshot import KeywordSnapshot, KeywordListing, KeywordDemand
from .circuit_breaker_state import CircuitBreakerState

__all__ = [
    "KeywordQueueEntry",
    "QueueState",
    "KeywordSnapshot",
    "KeywordListing",
    "KeywordDemand",
    "CircuitBreakerState",
]
