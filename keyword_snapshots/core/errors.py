"""
Error taxonomy for the refresh pipeline and unified error capture.

Exceptions:
    QueueUnavailable             store unreachable during enqueue/claim (retryable)
    QuotaExceeded                manual refresh quota exhausted until next UTC day
    ProviderTransient            timeout / rate limit / 5xx from the enrichment provider
    ProviderPermanent            malformed input or definitive no-data response
    ProviderCircuitOpen          provider circuit refused the call
    AggregationInsufficientData  too few usable listings to build a snapshot

Capture helpers log through structlog (always) and forward to Sentry when a
DSN is configured:

    capture_exception(exc, context={"queue_id": entry.id})
    capture_message("Circuit opened", level="warning")
"""

from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone
import logging

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from keyword_snapshots.core.context import get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "RefreshPipelineError",
    "QueueUnavailable",
    "QuotaExceeded",
    "ProviderTransient",
    "ProviderPermanent",
    "ProviderCircuitOpen",
    "AggregationInsufficientData",
    "init_sentry",
    "capture_exception",
    "capture_message",
]


# ============== EXCEPTION TAXONOMY ==============


class RefreshPipelineError(Exception):
    """Base class for errors raised by the snapshot refresh pipeline."""


class QueueUnavailable(RefreshPipelineError):
    """The queue/snapshot store could not be reached. Callers should retry later."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Refresh queue unavailable during {operation}{detail}")


class QuotaExceeded(RefreshPipelineError):
    """A user has used up their manual refreshes for the current UTC day."""

    def __init__(self, user_id: str, limit: int, resets_at: datetime):
        self.user_id = user_id
        self.limit = limit
        self.remaining = 0
        self.resets_at = resets_at
        super().__init__(
            f"Daily refresh limit reached. You can refresh up to {limit} keywords per day."
        )


class ProviderTransient(RefreshPipelineError):
    """Retryable provider failure (timeout, rate limit, 5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class ProviderPermanent(RefreshPipelineError):
    """Non-retryable provider failure (bad request, no results, provider error payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderCircuitOpen(RefreshPipelineError):
    """The provider circuit refused a call. The entry goes back to pending untouched."""

    def __init__(self, circuit: str):
        self.circuit = circuit
        super().__init__(f"Provider circuit {circuit} is not accepting calls")


class AggregationInsufficientData(RefreshPipelineError):
    """Fewer listings than needed for a meaningful snapshot. A valid outcome, not a failure."""

    def __init__(self, usable: int, required: int):
        self.usable = usable
        self.required = required
        super().__init__(f"Only {usable} usable listings (need {required})")


# ============== SENTRY ==============

_sentry_initialized: bool = False

# Quiet paths never worth an event
_IGNORED_PATHS = ("/health",)


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Turn on Sentry for this process (API, worker script or scheduler).

    Returns:
        True when Sentry is active; False when no DSN is set or init failed
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit, QuotaExceeded],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    url = event.get("request", {}).get("url", "")
    if any(path in url for path in _IGNORED_PATHS):
        return None

    request_context = get_context_dict()
    if "request_id" in request_context:
        event.setdefault("tags", {})["request_id"] = request_context["request_id"]
    if "user_id" in request_context:
        event.setdefault("user", {})["id"] = request_context["user_id"]
    return event


def _report_context(context: Optional[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    return {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
        **(context or {}),
    }


def _send_to_sentry(
    send: Callable[[], Optional[str]],
    extras: Dict[str, Any],
    level: str,
    tags: Optional[Dict[str, str]] = None,
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    if not _sentry_initialized:
        return None
    try:
        with sentry_sdk.new_scope() as scope:
            scope.level = level
            for key, value in extras.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            return send()
    except Exception as e:
        logger.warning("Failed to send event to Sentry", error=str(e))
        return None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log an unexpected exception and report it to Sentry when enabled.

    Args:
        exc: The exception
        context: Extra fields, e.g. {"queue_id": entry.id, "keyword": entry.keyword}
        level: Sentry level
        fingerprint: Custom Sentry grouping
        tags: Searchable Sentry tags

    Returns:
        Sentry event id, or None when not sent
    """
    extras = _report_context(context, error_type=type(exc).__name__)
    logger.error("Exception captured", exc_info=exc, **extras)
    return _send_to_sentry(lambda: sentry_sdk.capture_exception(exc), extras, level, tags, fingerprint)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Log a notable non-exception event (a circuit opening) and report it to Sentry."""
    extras = _report_context(context)
    getattr(logger, level, logger.info)(message, **extras)
    return _send_to_sentry(lambda: sentry_sdk.capture_message(message, level=level), extras, level, tags)
