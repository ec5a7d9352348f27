"""Tests for the CountermeasureDispatcher and the response table."""
from __future__ import annotations

import random
from datetime import timedelta

import pytest

from incident_sentinel.audit import IncidentLog
from incident_sentinel.core.config import EngineConfig
from incident_sentinel.core.errors import MalformedSeverityTable
from incident_sentinel.core.interfaces import NullInterceptor, RecordingEnforcer
from incident_sentinel.core.types import CountermeasureKind, FindingKind, Severity
from incident_sentinel.detection import PatternScanner
from incident_sentinel.response.countermeasures import (
    Alert,
    Block,
    DeployHoneypot,
    EnhancedMonitoring,
    InvalidateSession,
    LogOnly,
    Throttle,
    build_response_table,
)
from incident_sentinel.response.decoys import HoneypotKind
from incident_sentinel.response.dispatcher import (
    CountermeasureDispatcher,
    OutcomeStatus,
    honeypot_kind_for,
)
from incident_sentinel.response.honeypot import HoneypotRegistry
from incident_sentinel.response.profile import AttackerProfile, CountermeasureStatus

SOURCE = "203.0.113.7"


@pytest.fixture()
def profile(clock) -> AttackerProfile:
    p = AttackerProfile(source_id=SOURCE, first_seen=clock(), last_seen=clock())
    p.finding_kinds.add(FindingKind.SQL_INJECTION)
    return p


@pytest.fixture()
def honeypots(clock) -> HoneypotRegistry:
    return HoneypotRegistry(PatternScanner(), clock=clock, rng=random.Random(3))


@pytest.fixture()
def log() -> IncidentLog:
    return IncidentLog()


def _dispatcher(
    enforcer: RecordingEnforcer,
    clock,
    *,
    honeypots: HoneypotRegistry | None = None,
    interceptor: NullInterceptor | None = None,
    log: IncidentLog | None = None,
    timeout_seconds: float = 0.2,
) -> CountermeasureDispatcher:
    return CountermeasureDispatcher(
        enforcer,
        response_table=EngineConfig().response_table,
        honeypots=honeypots,
        interceptor=interceptor,
        incident_log=log,
        timeout_seconds=timeout_seconds,
        clock=clock,
        rng=random.Random(0),
    )


# ===================================================================
# Response table
# ===================================================================


class TestResponseTable:
    """Validation of the severity -> countermeasure table."""

    def test_default_table_is_complete(self) -> None:
        table = build_response_table(EngineConfig().response_table)
        assert set(table) == set(Severity)
        assert table[Severity.LOW] == (CountermeasureKind.LOG,)

    def test_table_is_read_only(self) -> None:
        table = build_response_table(EngineConfig().response_table)
        with pytest.raises(TypeError):
            table[Severity.LOW] = ()  # type: ignore[index]

    def test_missing_tier(self) -> None:
        with pytest.raises(MalformedSeverityTable) as exc_info:
            build_response_table({Severity.LOW: ["log"]})
        assert exc_info.value.details["missing"] == ["medium", "high", "critical"]

    def test_unknown_kind(self) -> None:
        raw = {s: ["log"] for s in Severity}
        raw[Severity.HIGH] = ["nuke_from_orbit"]
        with pytest.raises(MalformedSeverityTable):
            build_response_table(raw)

    def test_empty_row(self) -> None:
        raw = {s: ["log"] for s in Severity}
        raw[Severity.MEDIUM] = []
        with pytest.raises(MalformedSeverityTable):
            build_response_table(raw)

    def test_duplicate_kind(self) -> None:
        raw = {s: ["log"] for s in Severity}
        raw[Severity.CRITICAL] = ["block", "block"]
        with pytest.raises(MalformedSeverityTable):
            build_response_table(raw)

    def test_dispatcher_rejects_malformed_table(self, enforcer, clock) -> None:
        with pytest.raises(MalformedSeverityTable):
            CountermeasureDispatcher(enforcer, response_table={}, clock=clock)


# ===================================================================
# Planning
# ===================================================================


class TestPlan:
    """Severity -> concrete countermeasure variants."""

    def test_low(self, enforcer, clock, profile) -> None:
        assert _dispatcher(enforcer, clock).plan(Severity.LOW, profile) == [LogOnly()]

    def test_medium(self, enforcer, clock, profile) -> None:
        plan = _dispatcher(enforcer, clock).plan(Severity.MEDIUM, profile)
        assert plan == [
            EnhancedMonitoring(duration=timedelta(hours=1)),
            Throttle(delay_ms=2000, jitter_ms=500, duration=timedelta(hours=1)),
        ]

    def test_high(self, enforcer, clock, profile) -> None:
        plan = _dispatcher(enforcer, clock).plan(Severity.HIGH, profile)
        assert plan == [
            Block(duration=timedelta(hours=1)),
            DeployHoneypot(honeypot_kind=HoneypotKind.DATABASE),
            InvalidateSession(),
        ]

    def test_critical_is_permanent_and_aggressive(self, enforcer, clock, profile) -> None:
        plan = _dispatcher(enforcer, clock).plan(Severity.CRITICAL, profile)
        block, alert, honeypot = plan
        assert isinstance(block, Block) and block.permanent
        assert isinstance(alert, Alert)
        assert alert.payload["source_id"] == SOURCE
        assert isinstance(honeypot, DeployHoneypot) and honeypot.aggressive

    def test_escalation_adds_alert(self, enforcer, clock, profile) -> None:
        plan = _dispatcher(enforcer, clock).plan(Severity.HIGH, profile, escalate=True)
        assert isinstance(plan[-1], Alert)
        assert plan[-1].payload["escalation"] is True

    @pytest.mark.parametrize(
        ("kinds", "expected"),
        [
            ({FindingKind.NOSQL_INJECTION}, HoneypotKind.DATABASE),
            ({FindingKind.RATE_LIMIT_EXCEEDED}, HoneypotKind.RESOURCE),
            ({FindingKind.SCRIPT_INJECTION}, HoneypotKind.GENERIC),
            ({FindingKind.VOLUMETRIC_ANOMALY, FindingKind.SQL_INJECTION}, HoneypotKind.DATABASE),
        ],
    )
    def test_honeypot_kind_for(self, clock, kinds, expected) -> None:
        p = AttackerProfile(source_id="x", first_seen=clock(), last_seen=clock(), finding_kinds=kinds)
        assert honeypot_kind_for(p) is expected


# ===================================================================
# Dispatch
# ===================================================================


class TestDispatch:
    """Applying countermeasures through the enforcer."""

    @pytest.mark.asyncio
    async def test_medium_throttles_with_jitter(self, enforcer, clock, profile) -> None:
        outcomes = await _dispatcher(enforcer, clock).dispatch(SOURCE, Severity.MEDIUM, profile)
        assert [o.status for o in outcomes] == [OutcomeStatus.APPLIED, OutcomeStatus.APPLIED]
        ((source, delay),) = enforcer.calls_to("throttle")
        assert source == SOURCE
        assert 2000 <= delay <= 2500
        assert set(profile.active_countermeasures) == {
            CountermeasureKind.ENHANCED_MONITORING, CountermeasureKind.THROTTLE,
        }

    @pytest.mark.asyncio
    async def test_high_blocks_deploys_and_invalidates(
        self, enforcer, clock, profile, honeypots,
    ) -> None:
        interceptor = NullInterceptor()
        dispatcher = _dispatcher(enforcer, clock, honeypots=honeypots, interceptor=interceptor)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        assert all(o.ok for o in outcomes)
        assert enforcer.calls_to("block") == [(SOURCE, timedelta(hours=1))]
        assert interceptor.invalidated == [SOURCE]
        entry = profile.countermeasure(CountermeasureKind.DEPLOY_HONEYPOT)
        assert entry is not None
        assert honeypots.get(entry.detail["honeypot_id"]).source_id == SOURCE

    @pytest.mark.asyncio
    async def test_repeated_dispatch_refreshes(self, enforcer, clock, profile, honeypots) -> None:
        dispatcher = _dispatcher(enforcer, clock, honeypots=honeypots)
        await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        clock.advance(10)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        block = profile.countermeasure(CountermeasureKind.BLOCK)
        assert block is not None
        assert block.refresh_count == 1
        assert block.expires_at == clock() + timedelta(hours=1)
        assert outcomes[0].status is OutcomeStatus.REFRESHED
        assert len(enforcer.calls_to("block")) == 2
        assert len(honeypots.honeypots_for(SOURCE)) == 1

    @pytest.mark.asyncio
    async def test_optional_collaborators_are_skipped(self, enforcer, clock, profile) -> None:
        outcomes = await _dispatcher(enforcer, clock).dispatch(SOURCE, Severity.HIGH, profile)
        statuses = {o.kind: o.status for o in outcomes}
        assert statuses[CountermeasureKind.DEPLOY_HONEYPOT] is OutcomeStatus.SKIPPED
        assert statuses[CountermeasureKind.INVALIDATE_SESSION] is OutcomeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_permanent_block_is_never_shortened(self, enforcer, clock, profile) -> None:
        dispatcher = _dispatcher(enforcer, clock)
        await dispatcher.dispatch(SOURCE, Severity.CRITICAL, profile)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        block = profile.countermeasure(CountermeasureKind.BLOCK)
        assert block is not None and block.permanent
        assert outcomes[0].status is OutcomeStatus.REFRESHED
        assert enforcer.calls_to("block") == [(SOURCE, None)]

    @pytest.mark.asyncio
    async def test_alert_respects_cooldown(self, enforcer, clock, profile) -> None:
        dispatcher = _dispatcher(enforcer, clock)
        await dispatcher.dispatch(SOURCE, Severity.HIGH, profile, escalate=True)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile, escalate=True)
        assert outcomes[-1].status is OutcomeStatus.SKIPPED
        assert len(enforcer.calls_to("alert")) == 1
        clock.advance(3601)
        await dispatcher.dispatch(SOURCE, Severity.HIGH, profile, escalate=True)
        assert len(enforcer.calls_to("alert")) == 2


class TestEnforcerFailure:
    """Failures are retried once, then recorded as PENDING."""

    @pytest.mark.asyncio
    async def test_unreachable_enforcer(self, clock, profile, honeypots, log) -> None:
        enforcer = RecordingEnforcer(fail_on={"block"})
        dispatcher = _dispatcher(enforcer, clock, honeypots=honeypots, log=log)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)

        block_outcome = outcomes[0]
        assert block_outcome.status is OutcomeStatus.PENDING
        assert block_outcome.attempts == 2
        assert block_outcome.error is not None
        assert block_outcome.error["code"] == "SE-201"
        assert len(enforcer.calls_to("block")) == 2
        assert dispatcher.enforcer_degraded

        entry = profile.countermeasure(CountermeasureKind.BLOCK)
        assert entry is not None
        assert entry.status is CountermeasureStatus.PENDING

        # Later countermeasures still run
        assert outcomes[1].status is OutcomeStatus.APPLIED
        records = await log.recent(10)
        assert [r.record_type for r in records] == ["enforcement_failure"]

    @pytest.mark.asyncio
    async def test_slow_enforcer_times_out(self, clock, profile) -> None:
        enforcer = RecordingEnforcer(delay_seconds=0.5)
        dispatcher = _dispatcher(enforcer, clock, timeout_seconds=0.05)
        outcomes = await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        assert outcomes[0].status is OutcomeStatus.PENDING
        assert outcomes[0].error is not None
        assert outcomes[0].error["code"] == "SE-202"
        assert outcomes[0].attempts == 2

    @pytest.mark.asyncio
    async def test_recovery_clears_degraded(self, clock, profile) -> None:
        enforcer = RecordingEnforcer(fail_on={"block"})
        dispatcher = _dispatcher(enforcer, clock)
        await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        enforcer.fail_on.clear()
        await dispatcher.dispatch(SOURCE, Severity.HIGH, profile)
        entry = profile.countermeasure(CountermeasureKind.BLOCK)
        assert entry is not None
        assert entry.status is CountermeasureStatus.ACTIVE
        assert entry.last_error is None
        assert not dispatcher.enforcer_degraded


class TestHousekeeping:
    """Expiry and manual release."""

    @pytest.mark.asyncio
    async def test_prune_expired(self, enforcer, clock, profile) -> None:
        dispatcher = _dispatcher(enforcer, clock)
        await dispatcher.dispatch(SOURCE, Severity.CRITICAL, profile)
        await dispatcher.dispatch(SOURCE, Severity.MEDIUM, profile)
        clock.advance(3601)
        pruned = dispatcher.prune_expired(profile)
        assert set(pruned) == {
            CountermeasureKind.ENHANCED_MONITORING,
            CountermeasureKind.THROTTLE,
            CountermeasureKind.ALERT,
        }
        assert CountermeasureKind.BLOCK in profile.active_countermeasures

    @pytest.mark.asyncio
    async def test_release(self, enforcer, clock, profile) -> None:
        dispatcher = _dispatcher(enforcer, clock)
        await dispatcher.dispatch(SOURCE, Severity.CRITICAL, profile)
        assert dispatcher.release(profile)
        assert CountermeasureKind.BLOCK not in profile.active_countermeasures
        assert not dispatcher.release(profile)
