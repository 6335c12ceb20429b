"""Pytest configuration and fixtures for raceweek tests."""

from datetime import datetime, timedelta, timezone

import pytest

from raceweek.config.betting import BettingConfig
from raceweek.models.domain import WeekStatus
from tests.fakes import InMemoryStore, RecordingNotifier

UTC = timezone.utc

# ISO week 2026-W42: Monday 12 October to Sunday 18 October
WEEK_START = datetime(2026, 10, 12, tzinfo=UTC)
WEEK_END = datetime(2026, 10, 18, 23, 59, 59, 999999, tzinfo=UTC)


@pytest.fixture
def config():
    """Default betting configuration."""
    return BettingConfig()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def now():
    """Wednesday of 2026-W42, mid-month (not a calibration week)."""
    return datetime(2026, 10, 14, 12, 0, tzinfo=UTC)


@pytest.fixture
def open_week(store):
    """An open, unsettled 2026-W42."""
    return store.seed_week(WEEK_START, WEEK_END, 2026, 42, status=WeekStatus.OPEN)


@pytest.fixture
def seed_field(store):
    """
    Factory for eligible competitors.

    Each competitor gets two races inside the trailing window of `as_of`
    (one and three days before) with the given finishing rank.
    """

    def _seed(as_of: datetime, ratings: list[tuple[float, float]], rank: int = 5, **kwargs):
        competitors = []
        for rating, rd in ratings:
            competitor = store.add_competitor(rating=rating, rd=rd, **kwargs)
            store.add_races(
                competitor.id,
                [as_of - timedelta(days=1), as_of - timedelta(days=3)],
                rank=rank,
            )
            competitors.append(competitor)
        return competitors

    return _seed
