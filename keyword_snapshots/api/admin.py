"""
Admin endpoints for queue inspection and on-demand worker cycles.
Protected by the X-Admin-Secret header.
"""

from dataclasses import asdict
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from keyword_snapshots.api import deps
from keyword_snapshots.core.circuit_breaker import CircuitBreakerRegistry
from keyword_snapshots.core.errors import QueueUnavailable
from keyword_snapshots.services.refresh_worker import RefreshWorker
from keyword_snapshots.services.store import RefreshStore

router = APIRouter(dependencies=[Depends(deps.require_admin)])


class QueueStatsResponse(BaseModel):
    queue: Dict[str, int]
    circuits: Dict[str, str]


class CycleResponse(BaseModel):
    reclaimed: int
    abandoned: int
    claimed: int
    completed: int
    no_data: int
    failed: int
    deferred: int
    skipped: str | None = None


@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(store: RefreshStore = Depends(deps.get_refresh_store)) -> QueueStatsResponse:
    try:
        stats = store.queue_stats()
    except QueueUnavailable:
        raise deps.queue_unavailable()
    return QueueStatsResponse(queue=stats, circuits=CircuitBreakerRegistry.get_all_states())


@router.post("/worker/run", response_model=CycleResponse)
async def run_worker_cycle(worker: RefreshWorker = Depends(deps.get_refresh_worker)) -> CycleResponse:
    """Run one worker cycle now and report what it did."""
    try:
        result = await worker.run_cycle()
    except QueueUnavailable:
        raise deps.queue_unavailable()
    return CycleResponse(**asdict(result))
