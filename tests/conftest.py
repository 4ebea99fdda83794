"""
Shared fixtures: fake clock, in-memory stores and a limiter factory.
"""

from datetime import datetime, timedelta, timezone

import pytest

from loginlimit.config import Settings
from loginlimit.rate_limit import RateLimiter
from loginlimit.stores import InMemoryAttemptStore, InMemoryBanStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def attempts() -> InMemoryAttemptStore:
    return InMemoryAttemptStore()


@pytest.fixture()
def bans() -> InMemoryBanStore:
    return InMemoryBanStore()


@pytest.fixture()
def make_limiter(attempts, bans, clock):
    """Build a RateLimiter over the shared stores with overridden settings."""

    def _make(**overrides) -> RateLimiter:
        options = {"max_retries": 3, "find_time_seconds": 60}
        options.update(overrides)
        return RateLimiter(attempts, bans, Settings(**options), clock=clock)

    return _make
