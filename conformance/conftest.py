"""Shared fixtures for Incident Sentinel conformance tests.

Every fixture runs against a manually advanced clock so that windows,
idle periods and expiries are exercised without sleeping.
"""
from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from incident_sentinel import EngineConfig, SecurityEngine
from incident_sentinel.core.interfaces import (
    InMemoryIncidentStore,
    NullInterceptor,
    RecordingEnforcer,
)
from incident_sentinel.detection import PatternScanner
from incident_sentinel.detection.traffic import TrafficMonitor


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 15, 9, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scanner() -> PatternScanner:
    return PatternScanner.from_config(EngineConfig())


@pytest.fixture()
def traffic(clock: ManualClock) -> TrafficMonitor:
    return TrafficMonitor.from_config(EngineConfig(), clock=clock)


@pytest.fixture()
def enforcer() -> RecordingEnforcer:
    return RecordingEnforcer()


@pytest.fixture()
def interceptor() -> NullInterceptor:
    return NullInterceptor()


@pytest.fixture()
def engine(
    clock: ManualClock,
    enforcer: RecordingEnforcer,
    interceptor: NullInterceptor,
) -> SecurityEngine:
    return SecurityEngine(
        EngineConfig(enforcement_timeout_seconds=0.2),
        enforcer,
        store=InMemoryIncidentStore(),
        interceptor=interceptor,
        clock=clock,
        rng=random.Random(42),
    )


@pytest.fixture()
def advance_window(clock: ManualClock) -> Callable[[], None]:
    """Move the clock past one full traffic window."""

    def _advance() -> None:
        clock.advance(EngineConfig().window_seconds + 1)

    return _advance
