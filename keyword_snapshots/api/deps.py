import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from keyword_snapshots.core.config import settings
from keyword_snapshots.core.context import set_user_id
from keyword_snapshots.services import runtime
from keyword_snapshots.services.quota import QuotaGuard
from keyword_snapshots.services.refresh_worker import RefreshWorker
from keyword_snapshots.services.store import RefreshStore

USER_ID_HEADER = "X-User-Id"
ADMIN_SECRET_HEADER = "X-Admin-Secret"

# Seconds clients should wait after a 503 from the queue
QUEUE_RETRY_AFTER_SECONDS = 30


def get_refresh_store() -> RefreshStore:
    return runtime.get_store()


def get_quota_guard(store: RefreshStore = Depends(get_refresh_store)) -> QuotaGuard:
    return QuotaGuard(store)


def get_refresh_worker() -> RefreshWorker:
    return runtime.get_worker()


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER)) -> str:
    """
    Identify the requester.

    Authentication happens upstream; the gateway forwards the authenticated
    user in X-User-Id.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    set_user_id(user_id)
    return user_id


def require_admin(x_admin_secret: Optional[str] = Header(default=None, alias=ADMIN_SECRET_HEADER)) -> None:
    if not settings.ADMIN_SECRET:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    if not x_admin_secret or not secrets.compare_digest(x_admin_secret, settings.ADMIN_SECRET):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin secret")


def queue_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Refresh queue temporarily unavailable",
        headers={"Retry-After": str(QUEUE_RETRY_AFTER_SECONDS)},
    )
