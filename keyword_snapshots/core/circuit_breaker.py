"""
Circuit breaker for the enrichment provider.

The refresh worker reads `available_calls()` before claiming a batch, asks
`allow_request()` before every provider call and reports each call with
`record_success()` / `record_failure()`. Once `failure_threshold` calls fail
in a row the circuit opens and cycles stop claiming, so queued keywords wait
in `pending` instead of burning attempts.

After `recovery_timeout` seconds the circuit goes half-open and lets
`half_open_max_calls` trial calls through. Enough successes close it, any
failure opens it again. Trial slots that were handed out but never reported
are given back once another `recovery_timeout` has passed.

With an engine the state is mirrored into circuit_breaker_state and restored
when a breaker with the same name is created.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Dict, Optional
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from keyword_snapshots.core.errors import capture_message
from keyword_snapshots.core.typing import ensure_utc, utc_now
from keyword_snapshots.models.circuit_breaker_state import CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"  # provider calls skipped
    HALF_OPEN = "half_open"  # limited trial calls


def _save(engine: Engine, row: CircuitBreakerState) -> None:
    try:
        with Session(engine) as session:
            session.merge(row)
            session.commit()
    except SQLAlchemyError as e:
        logger.warning(f"Circuit {row.name}: could not save state ({e}), keeping it in memory only")


def _restore(engine: Engine, name: str) -> Optional[CircuitBreakerState]:
    try:
        with Session(engine) as session:
            return session.get(CircuitBreakerState, name)
    except SQLAlchemyError as e:
        logger.warning(f"Circuit {name}: could not load saved state ({e}), starting closed")
        return None


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 300.0  # seconds
    half_open_max_calls: int = 3
    engine: Optional[Engine] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _trial_successes: int = field(default=0, init=False)
    _trial_calls: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _half_open_since: Optional[datetime] = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def __post_init__(self):
        if self.engine is None:
            return
        saved = _restore(self.engine, self.name)
        if saved is None:
            return
        try:
            self._state = CircuitState(saved.state)
        except ValueError:
            self._state = CircuitState.CLOSED
        self._failure_count = saved.failure_count
        self._last_failure_time = ensure_utc(saved.last_failure_at)
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_since = utc_now()
        logger.info(f"Circuit {self.name}: restored {self._state.value} with {self._failure_count} failures")

    @property
    def state(self) -> CircuitState:
        """Current state, without applying the recovery timeout."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _move_to(self, new_state: CircuitState, reason: str) -> CircuitState:
        """Switch state and reset trial counters. Caller holds the lock. Returns the old state."""
        old_state = self._state
        self._state = new_state
        self._trial_calls = 0
        self._trial_successes = 0
        self._half_open_since = utc_now() if new_state == CircuitState.HALF_OPEN else None
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
        logger.log(
            logging.WARNING if new_state == CircuitState.OPEN else logging.INFO,
            f"Circuit {self.name}: {old_state.value} -> {new_state.value} ({reason})",
        )
        return old_state

    def _save(self) -> None:
        if self.engine is None:
            return
        _save(
            self.engine,
            CircuitBreakerState(
                name=self.name,
                state=self._state.value,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_time,
                updated_at=utc_now(),
            ),
        )

    def _apply_timeouts(self) -> bool:
        """Open -> half-open after the recovery timeout; hand back unreported trial slots. Caller holds the lock."""
        now = datetime.now(timezone.utc)
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            waited = (now - self._last_failure_time).total_seconds()
            if waited >= self.recovery_timeout:
                self._move_to(CircuitState.HALF_OPEN, f"{waited:.0f}s since last failure")
                return True
        elif (
            self._state == CircuitState.HALF_OPEN
            and self._trial_calls >= self.half_open_max_calls
            and self._half_open_since is not None
            and (now - self._half_open_since).total_seconds() >= self.recovery_timeout
        ):
            logger.info(f"Circuit {self.name}: trial calls never reported, starting a new trial")
            self._trial_calls = 0
            self._trial_successes = 0
            self._half_open_since = now
        return False

    def available_calls(self) -> Optional[int]:
        """
        Provider calls the circuit would let through right now, without using any.

        None means unlimited (closed), 0 means open or every trial slot is taken.
        """
        with self._lock:
            changed = self._apply_timeouts()
            if self._state == CircuitState.CLOSED:
                available: Optional[int] = None
            elif self._state == CircuitState.OPEN:
                available = 0
            else:
                available = max(0, self.half_open_max_calls - self._trial_calls)
        if changed:
            self._save()
        return available

    def allow_request(self) -> bool:
        """Take permission for one provider call. In half-open this uses a trial slot."""
        with self._lock:
            changed = self._apply_timeouts()
            if self._state == CircuitState.CLOSED:
                allowed = True
            elif self._state == CircuitState.OPEN:
                allowed = False
            elif self._trial_calls < self.half_open_max_calls:
                self._trial_calls += 1
                allowed = True
            else:
                allowed = False
        if changed:
            self._save()
        return allowed

    def record_success(self) -> None:
        closed = False
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._failure_count = 0
            else:
                self._trial_successes += 1
                if self._trial_successes >= self.half_open_max_calls:
                    self._move_to(CircuitState.CLOSED, f"{self._trial_successes} trial calls succeeded")
                    closed = True
        if closed:
            self._save()

    def record_failure(self) -> None:
        opened_from: Optional[CircuitState] = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)
            if self._state == CircuitState.HALF_OPEN:
                opened_from = self._move_to(CircuitState.OPEN, "trial call failed")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                opened_from = self._move_to(CircuitState.OPEN, f"{self._failure_count} consecutive failures")

        if opened_from is not None:
            self._save()
            capture_message(
                f"Circuit {self.name} opened",
                level="warning",
                context={"from_state": opened_from.value, "failure_count": self._failure_count},
            )

    def reset(self) -> None:
        with self._lock:
            self._move_to(CircuitState.CLOSED, "manual reset")
            self._last_failure_time = None
        self._save()


class CircuitBreakerRegistry:
    """One breaker per provider name per process."""

    _breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def get(cls, name: str, **kwargs) -> CircuitBreaker:
        if name not in cls._breakers:
            cls._breakers[name] = CircuitBreaker(name=name, **kwargs)
        return cls._breakers[name]

    @classmethod
    def get_all_states(cls) -> Dict[str, str]:
        return {name: breaker.state.value for name, breaker in cls._breakers.items()}

    @classmethod
    def clear(cls) -> None:
        cls._breakers.clear()
