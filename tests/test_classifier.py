"""Tests for the ThreatClassifier state machine.

Tests cover:
- CLEAN -> WATCHED -> FLAGGED -> BLOCKED transitions, including cascades
- Reputation penalties, the low-reputation block path and recovery
- Dispatch happening only on transitions
- Time decay one tier per idle period
- Eviction of idle profiles and restoration from the incident log
"""
from __future__ import annotations

import asyncio
import random

import pytest

from incident_sentinel.audit import IncidentLog
from incident_sentinel.core.config import EngineConfig
from incident_sentinel.core.interfaces import RecordingEnforcer
from incident_sentinel.core.types import (
    CountermeasureKind,
    Finding,
    FindingKind,
    Severity,
    ThreatState,
)
from incident_sentinel.response.classifier import ThreatClassifier
from incident_sentinel.response.dispatcher import CountermeasureDispatcher

SOURCE = "198.51.100.23"


@pytest.fixture()
def log() -> IncidentLog:
    return IncidentLog()


@pytest.fixture()
def classifier(enforcer: RecordingEnforcer, clock, log: IncidentLog) -> ThreatClassifier:
    dispatcher = CountermeasureDispatcher(
        enforcer,
        response_table=EngineConfig().response_table,
        incident_log=log,
        timeout_seconds=0.2,
        clock=clock,
        rng=random.Random(0),
    )
    return ThreatClassifier(dispatcher, incident_log=log, clock=clock)


def _finding(
    clock,
    severity: Severity,
    *,
    source: str = SOURCE,
    kind: FindingKind = FindingKind.SQL_INJECTION,
) -> Finding:
    return Finding(kind=kind, source_id=source, severity=severity, timestamp=clock())


# ===================================================================
# Transitions
# ===================================================================


class TestTransitions:
    """Escalation through the four states."""

    @pytest.mark.asyncio
    async def test_low_finding_keeps_source_clean(self, classifier, clock, enforcer) -> None:
        result = await classifier.classify(_finding(clock, Severity.LOW))
        assert result.state is ThreatState.CLEAN
        assert result.transitions == ()
        assert result.incident.countermeasures_dispatched == ()
        assert enforcer.calls == []
        assert classifier.profile(SOURCE).reputation_score == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_medium_finding_watches(self, classifier, clock, enforcer) -> None:
        result = await classifier.classify(_finding(clock, Severity.MEDIUM))
        assert result.transitions == ((ThreatState.CLEAN, ThreatState.WATCHED),)
        assert result.incident.assigned_severity is Severity.MEDIUM
        assert len(enforcer.calls_to("throttle")) == 1

    @pytest.mark.asyncio
    async def test_second_finding_while_watched_flags(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.MEDIUM))
        clock.advance(30)
        result = await classifier.classify(_finding(clock, Severity.LOW))
        assert result.transitions == ((ThreatState.WATCHED, ThreatState.FLAGGED),)
        # The correlation window still holds the MEDIUM finding
        assert result.incident.assigned_severity is Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_critical_cascades_to_flagged(self, classifier, clock, enforcer) -> None:
        result = await classifier.classify(_finding(clock, Severity.CRITICAL))
        assert result.transitions == (
            (ThreatState.CLEAN, ThreatState.WATCHED),
            (ThreatState.WATCHED, ThreatState.FLAGGED),
        )
        assert enforcer.calls_to("block") == [(SOURCE, None)]

    @pytest.mark.asyncio
    async def test_three_high_findings_block(self, classifier, clock, enforcer) -> None:
        states = []
        for _ in range(3):
            result = await classifier.classify(_finding(clock, Severity.HIGH))
            states.append(result.state)
            clock.advance(10)
        assert states == [ThreatState.WATCHED, ThreatState.FLAGGED, ThreatState.BLOCKED]
        assert len(enforcer.calls_to("block")) == 3
        assert len(enforcer.calls_to("alert")) == 1
        profile = classifier.profile(SOURCE)
        assert profile.countermeasure(CountermeasureKind.BLOCK).refresh_count == 2

    @pytest.mark.asyncio
    async def test_low_reputation_blocks_flagged_source(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.CRITICAL))
        result = await classifier.classify(_finding(clock, Severity.CRITICAL))
        assert classifier.profile(SOURCE).reputation_score == pytest.approx(0.2)
        assert result.transitions == ((ThreatState.FLAGGED, ThreatState.BLOCKED),)

    @pytest.mark.asyncio
    async def test_no_dispatch_without_transition(self, classifier, clock, enforcer) -> None:
        for _ in range(3):
            await classifier.classify(_finding(clock, Severity.HIGH))
        calls_before = len(enforcer.calls)
        result = await classifier.classify(_finding(clock, Severity.HIGH))
        assert result.state is ThreatState.BLOCKED
        assert result.transitions == ()
        assert result.incident.countermeasures_dispatched == ()
        assert len(enforcer.calls) == calls_before

    @pytest.mark.asyncio
    async def test_sources_are_independent(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.CRITICAL, source="a"))
        await classifier.classify(_finding(clock, Severity.LOW, source="b"))
        assert classifier.profile("a").state is ThreatState.FLAGGED
        assert classifier.profile("b").state is ThreatState.CLEAN

    @pytest.mark.asyncio
    async def test_concurrent_findings_for_one_source(self, classifier, clock) -> None:
        results = await asyncio.gather(
            *(classifier.classify(_finding(clock, Severity.HIGH)) for _ in range(3)),
        )
        assert sum(len(r.transitions) for r in results) == 3
        assert classifier.profile(SOURCE).state is ThreatState.BLOCKED


# ===================================================================
# Decay and reputation
# ===================================================================


class TestDecay:
    """State and severity step down while a source is quiet."""

    @pytest.mark.asyncio
    async def test_one_tier_per_idle_period(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.CRITICAL))

        clock.advance(3600)
        assert await classifier.decay_all() == [
            (SOURCE, ThreatState.FLAGGED, ThreatState.WATCHED),
        ]
        profile = classifier.profile(SOURCE)
        assert profile.current_severity is Severity.HIGH

        clock.advance(1800)
        assert await classifier.decay_all() == []

        clock.advance(5400)
        await classifier.decay_all()
        assert profile.state is ThreatState.CLEAN
        assert profile.current_severity is Severity.LOW

    @pytest.mark.asyncio
    async def test_decay_never_raises_state(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.MEDIUM))
        seen = []
        for _ in range(4):
            clock.advance(3600)
            await classifier.decay_all()
            seen.append(classifier.profile(SOURCE).state.rank)
        assert seen == sorted(seen, reverse=True)
        assert seen[-1] == 0

    @pytest.mark.asyncio
    async def test_reputation_recovers_while_quiet(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.CRITICAL))
        clock.advance(7200)
        await classifier.decay_all()
        assert classifier.profile(SOURCE).reputation_score == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_decay_is_logged(self, classifier, clock, log) -> None:
        await classifier.classify(_finding(clock, Severity.MEDIUM))
        clock.advance(3600)
        await classifier.decay_all()
        records = await log.recent(50)
        assert records[-1].summary == "Decayed watched -> clean"


# ===================================================================
# Eviction, restoration and release
# ===================================================================


class TestEviction:
    """Idle profiles leave the hot set and can be rebuilt."""

    @pytest.mark.asyncio
    async def test_idle_profile_is_evicted_and_restored(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.LOW))
        clock.advance(86401)
        assert await classifier.evict_idle() == [SOURCE]
        assert classifier.profile(SOURCE) is None

        restored = await classifier.restore_profile(SOURCE)
        assert restored is not None
        assert restored.reputation_score == pytest.approx(0.95)
        assert restored.incident_count == 1
        assert classifier.profile(SOURCE) is restored

    @pytest.mark.asyncio
    async def test_classify_restores_evicted_profile(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.LOW))
        clock.advance(86401)
        await classifier.evict_idle()
        await classifier.classify(_finding(clock, Severity.LOW))
        assert classifier.profile(SOURCE).incident_count == 2

    @pytest.mark.asyncio
    async def test_profiles_with_countermeasures_are_kept(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.MEDIUM))
        clock.advance(86401)
        assert await classifier.evict_idle() == []
        assert await classifier.prune_countermeasures() == 2
        assert await classifier.evict_idle() == [SOURCE]

    @pytest.mark.asyncio
    async def test_unknown_source_cannot_be_restored(self, classifier) -> None:
        assert await classifier.restore_profile("203.0.113.250") is None
        assert classifier._locks == {}

    @pytest.mark.asyncio
    async def test_eviction_releases_per_source_state(self, classifier, clock) -> None:
        for i in range(500):
            source = f"10.20.{i // 250}.{i % 250}"
            await classifier.classify(_finding(clock, Severity.LOW, source=source))
        clock.advance(86401)
        assert len(await classifier.evict_idle()) == 500
        assert classifier.profiles() == []
        assert classifier._locks == {}

    @pytest.mark.asyncio
    async def test_evicted_index_is_bounded(self, enforcer, clock) -> None:
        dispatcher = CountermeasureDispatcher(
            enforcer, response_table=EngineConfig().response_table, clock=clock,
        )
        classifier = ThreatClassifier(dispatcher, clock=clock)
        for i in range(1200):
            source = f"10.21.{i // 250}.{i % 250}"
            await classifier.classify(_finding(clock, Severity.LOW, source=source))
        clock.advance(86401)
        await classifier.evict_idle()
        assert len(classifier._evicted) == 1000

        # nothing to restore from, so the index entry goes with the miss
        await classifier.classify(_finding(clock, Severity.LOW, source="10.21.4.199"))
        assert "10.21.4.199" not in classifier._evicted
        assert classifier.profile("10.21.4.199").incident_count == 1

    @pytest.mark.asyncio
    async def test_release(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.CRITICAL))
        assert await classifier.release(SOURCE)
        assert not await classifier.release(SOURCE)
        assert not await classifier.release("unknown")


class TestIncidentRecords:
    """Every classification is written to the incident log."""

    @pytest.mark.asyncio
    async def test_incident_record_carries_profile_snapshot(self, classifier, clock, log) -> None:
        result = await classifier.classify(_finding(clock, Severity.MEDIUM))
        records = [r for r in await log.recent(50) if r.record_type == "incident"]
        assert len(records) == 1
        record = records[0]
        assert record.summary == "clean -> watched"
        assert record.payload["incident"]["incident_id"] == result.incident.incident_id
        assert record.payload["profile"]["state"] == "watched"

    @pytest.mark.asyncio
    async def test_recent_incidents(self, classifier, clock) -> None:
        await classifier.classify(_finding(clock, Severity.LOW))
        await classifier.classify(_finding(clock, Severity.LOW, source="other"))
        assert [i.source_id for i in classifier.recent_incidents()] == [SOURCE, "other"]
