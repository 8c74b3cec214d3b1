"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime, timedelta, timezone

from src.database.connection import Database
from src.database.repository import (
    AlertHistoryRepository,
    DigestRunRepository,
    EmailQueueRepository,
    PreferenceRepository,
    RuleRepository,
    SnapshotRepository,
    UserRepository,
)


class FakeClock:
    """Settable clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock fixed at Monday 2024-06-03 02:00 UTC (10:00 in Shanghai)."""
    return FakeClock(datetime(2024, 6, 3, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def repos(db):
    """Create all repositories."""
    return {
        "user": UserRepository(db),
        "rule": RuleRepository(db),
        "alert": AlertHistoryRepository(db),
        "queue": EmailQueueRepository(db),
        "pref": PreferenceRepository(db),
        "run": DigestRunRepository(db),
        "snapshot": SnapshotRepository(db),
    }


@pytest.fixture
def sample_stock_info():
    """Sample Yahoo Finance stock info response."""
    return {
        "regularMarketPrice": 175.50,
        "previousClose": 173.25,
        "recommendationKey": "buy",
        "targetMeanPrice": 210.0,
        "trailingPE": 29.4,
        "shortName": "Apple Inc.",
        "exchange": "NASDAQ",
    }
