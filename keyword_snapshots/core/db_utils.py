"""Retry and health helpers for the queue database.

The store runs every queue and snapshot call through `execute_with_retry`.
A dropped pooled connection (serverless PostgreSQL scaling down, a pgbouncer
restart, SQLite briefly locked by another worker) gets a fresh session and
another try. Anything that is not a recognizable connection failure is
re-raised immediately.
"""

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlmodel import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS = (OperationalError, DisconnectionError, InterfaceError)

# Lowercased fragments of driver messages for connection-level failures
TRANSIENT_ERRORS = (
    "server closed the connection unexpectedly",
    "connection refused",
    "connection reset by peer",
    "ssl connection has been closed unexpectedly",
    "terminating connection due to administrator command",
    "connection timed out",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "database is locked",
)


def is_transient_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_ERRORS)


def retry_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait after failed attempt number `attempt` (0-based)."""
    return min(base_delay * (2**attempt), max_delay)


def execute_with_retry(
    engine: Engine,
    operation: Callable[[Session], T],
    max_retries: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
) -> T:
    """
    Run `operation(session)` on a fresh session, retrying connection drops.

    Args:
        engine: Engine to open sessions on
        operation: Callable doing the work; it commits its own changes
        max_retries: Extra attempts after the first one
        base_delay: Delay after the first failure, doubled per retry
        max_delay: Cap for a single delay

    Raises:
        OperationalError, DisconnectionError, InterfaceError: not transient,
            or still failing after max_retries
    """
    name = getattr(operation, "__name__", "operation")
    attempt = 0
    while True:
        try:
            with Session(engine) as session:
                return operation(session)
        except RETRYABLE_EXCEPTIONS as e:
            if attempt >= max_retries or not is_transient_error(e):
                raise
            delay = retry_delay(attempt, base_delay, max_delay)
            attempt += 1
            logger.warning(
                f"[DB Retry] {name} lost its connection (attempt {attempt}/{max_retries + 1}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            time.sleep(delay)


def check_db_connection(engine: Engine) -> bool:
    """Round-trip a SELECT 1. Used by /health."""
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"[DB Health] Connection check failed: {e}")
        return False
    return True
