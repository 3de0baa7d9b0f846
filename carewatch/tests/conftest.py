"""Pytest configuration and shared fixtures.

Fixtures:
- clean_settings: clears the cached Settings so env overrides apply
- store: fresh InMemoryRecordStore
- clock: controllable timezone-aware clock
- dispatcher: AlertDispatcher on the in-memory store and controllable clock
- fake_redis: dict-backed RedisClient stand-in
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest

from carewatch.core.config import get_settings
from carewatch.services.alert_dispatcher import AlertDispatcher
from carewatch.services.store import InMemoryRecordStore
from carewatch.tests.factories import FakeRedisClient


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def clean_settings() -> Generator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def dispatcher(store: InMemoryRecordStore, clock: ManualClock) -> AlertDispatcher:
    return AlertDispatcher(store, clock=clock)


@pytest.fixture
def fake_redis() -> FakeRedisClient:
    return FakeRedisClient()
