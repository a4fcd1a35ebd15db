import logging
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI

from keyword_snapshots.api import admin, keywords
from keyword_snapshots.core.config import settings
from keyword_snapshots.core.db_utils import check_db_connection
from keyword_snapshots.core.errors import init_sentry
from keyword_snapshots.core.scheduler import shutdown_scheduler, start_scheduler
from keyword_snapshots.db import create_db_and_tables, engine
from keyword_snapshots.middleware.context import RequestContextMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.PROJECT_NAME} API starting ({settings.ENVIRONMENT})")
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    if settings.RUN_SCHEDULER:
        start_scheduler()
    else:
        logger.info("RUN_SCHEDULER is false - skipping scheduler startup in this process.")

    try:
        yield
    finally:
        shutdown_scheduler()


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))

app.include_router(keywords.router, prefix=f"{settings.API_V1_STR}/keywords", tags=["keywords"])
app.include_router(admin.router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])


@app.get("/health")
def health():
    """Liveness plus a database round trip."""
    db_ok = check_db_connection(engine)
    return {"status": "healthy" if db_ok else "degraded", "database": db_ok}
