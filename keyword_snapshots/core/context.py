"""
Request-scoped identifiers.

The middleware sets the request id, the auth dependency sets the user id.
Error capture reads both back so Sentry events and "Exception captured" log
lines can be tied to the HTTP request that caused them. Worker code runs
outside any request and sees None for both.
"""

import secrets
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("keyword_snapshots_request_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("keyword_snapshots_user_id", default=None)


def generate_request_id() -> str:
    return f"req_{secrets.token_hex(8)}"


def set_request_id(request_id: Optional[str]) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_user_id(user_id: Optional[str]) -> None:
    _user_id.set(user_id)


def get_user_id() -> Optional[str]:
    return _user_id.get()


def clear_context() -> None:
    set_request_id(None)
    set_user_id(None)


def get_context_dict() -> dict[str, str]:
    """Identifiers that are set, for enriching error reports."""
    values = {"request_id": get_request_id(), "user_id": get_user_id()}
    return {key: value for key, value in values.items() if value is not None}
