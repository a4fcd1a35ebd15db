"""
Test fixtures for keyword-snapshots tests.

Provides in-memory database fixtures, a SQL-backed refresh store, and scripted
stand-ins for the listing provider and the worker's sleep.
"""

import pytest
from typing import Callable, Generator, List, Optional, Sequence, Union
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import keyword_snapshots.models  # noqa: F401  (registers tables)
from keyword_snapshots.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from keyword_snapshots.core.errors import ProviderPermanent
from keyword_snapshots.provider.base import Listing
from keyword_snapshots.services.refresh_worker import RefreshWorker
from keyword_snapshots.services.store import SqlRefreshStore

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

ScriptStep = Union[List[Listing], Exception]


class FakeProvider:
    """
    Scripted listing provider.

    `responses[keyword]` is a list of steps consumed one per call; the last
    step repeats. A step is either a list of listings or an exception to raise.
    """

    def __init__(self):
        self.responses: dict[str, List[ScriptStep]] = {}
        self.calls: list[tuple[str, str]] = []

    def script(self, keyword: str, *steps: ScriptStep) -> None:
        self.responses[keyword] = list(steps)

    async def fetch_listings(self, keyword: str, marketplace: str) -> list[Listing]:
        self.calls.append((keyword, marketplace))
        steps = self.responses.get(keyword)
        if not steps:
            raise ProviderPermanent(f"No results for {keyword}")
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return list(step)


class RecordingSleep:
    """Awaitable sleep that returns immediately and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def build_listings(
    count: int,
    price: Optional[float] = 20.0,
    reviews: int = 500,
    rating: float = 4.4,
    brands: Sequence[str] = ("Acme",),
) -> list[Listing]:
    return [
        Listing(
            asin=f"B0TEST{i:04d}",
            position=i + 1,
            title=f"Storage bag {i}",
            brand=brands[i % len(brands)],
            price=None if price is None else price + i,
            reviews=reviews + i * 100,
            rating=rating,
        )
        for i in range(count)
    ]


@pytest.fixture(autouse=True)
def clear_circuit_registry():
    """Breakers are process-wide; start every test from a clean registry."""
    CircuitBreakerRegistry.clear()
    yield
    CircuitBreakerRegistry.clear()


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def store(test_engine) -> SqlRefreshStore:
    return SqlRefreshStore(test_engine, max_retries=0)


@pytest.fixture
def listing_factory() -> Callable[..., list[Listing]]:
    return build_listings


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(name="test-provider", failure_threshold=100)


@pytest.fixture
def worker(store, fake_provider, breaker, fake_sleep) -> RefreshWorker:
    return RefreshWorker(
        store=store,
        provider=fake_provider,
        breaker=breaker,
        batch_size=10,
        concurrency=3,
        max_attempts=3,
        backoff_base=2.0,
        backoff_max=30.0,
        claim_timeout_minutes=30,
        max_keywords_per_day=200,
        idle_sleep=60.0,
        error_backoff=120.0,
        sleep=fake_sleep,
    )
