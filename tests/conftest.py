"""Shared fixtures for Incident Sentinel unit tests."""
from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from incident_sentinel.audit.incident_log import IncidentLog
from incident_sentinel.core.config import EngineConfig
from incident_sentinel.core.interfaces import (
    InMemoryIncidentStore,
    NullInterceptor,
    RecordingEnforcer,
)

EPOCH = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock; call it to read the current time."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def enforcer() -> RecordingEnforcer:
    return RecordingEnforcer()


@pytest.fixture()
def store() -> InMemoryIncidentStore:
    return InMemoryIncidentStore()


@pytest.fixture()
def interceptor() -> NullInterceptor:
    return NullInterceptor()


@pytest.fixture()
def incident_log(store: InMemoryIncidentStore) -> IncidentLog:
    return IncidentLog(store, buffer_limit=50)


@pytest.fixture()
def config() -> EngineConfig:
    return EngineConfig(enforcement_timeout_seconds=0.2)


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(1234)
