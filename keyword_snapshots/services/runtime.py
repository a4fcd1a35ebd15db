"""
Process-wide wiring: one store, one provider circuit breaker and one worker
per process, shared by the API, the scheduler and the scripts.
"""

from typing import Optional

from keyword_snapshots.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from keyword_snapshots.db import engine
from keyword_snapshots.provider.rainforest import RainforestProvider
from keyword_snapshots.services.refresh_worker import RefreshWorker
from keyword_snapshots.services.store import SqlRefreshStore

PROVIDER_CIRCUIT = "rainforest"

_store: Optional[SqlRefreshStore] = None
_worker: Optional[RefreshWorker] = None


def get_store() -> SqlRefreshStore:
    global _store
    if _store is None:
        _store = SqlRefreshStore(engine)
    return _store


def get_provider_breaker() -> CircuitBreaker:
    return CircuitBreakerRegistry.get(PROVIDER_CIRCUIT, engine=engine)


def get_worker() -> RefreshWorker:
    global _worker
    if _worker is None:
        _worker = RefreshWorker(
            store=get_store(),
            provider=RainforestProvider(),
            breaker=get_provider_breaker(),
        )
    return _worker
