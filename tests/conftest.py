"""Shared test fixtures."""
from datetime import datetime, timedelta

import pytest

from stylebook.config import get_settings
from stylebook.database import create_session_factory
from stylebook.models import ServiceCatalog


class FakeClock:
    """Manually advanced time source (seconds since epoch)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeUtcClock:
    """Manually advanced naive-UTC datetime source."""

    def __init__(self, start: datetime = datetime(2026, 11, 1, 10, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are read per test, never leaked between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a throwaway SQLite file."""
    factory = create_session_factory(f"sqlite:///{tmp_path / 'stylebook.db'}")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def make_service(session_factory):
    """Create a service row and return it (detached, attributes loaded)."""
    def _create(name: str = "Classic cut", active: bool = True, price: float = 15, duration: int = 30):
        with session_factory() as db:
            service = ServiceCatalog(name=name, active=active, price=price, duration_minutes=duration)
            db.add(service)
            db.commit()
            return service
    return _create
