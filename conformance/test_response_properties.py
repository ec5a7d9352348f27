"""Response conformance tests.

Verifies the properties the response pipeline MUST hold: idempotent
blocks, monotonic decay, the three-strike escalation scenario and
honeypot interactions feeding back into classification.
"""
from __future__ import annotations

import pytest

from incident_sentinel import SecurityEngine
from incident_sentinel.core.interfaces import NullInterceptor, RecordingEnforcer
from incident_sentinel.core.types import (
    CountermeasureKind,
    FindingKind,
    Severity,
    ThreatState,
)
from incident_sentinel.response.profile import AttackerProfile

S1 = "S1"
UNION_PAYLOAD = "1 UNION SELECT username, password FROM users"


# ===================================================================
# Block idempotence
# ===================================================================

class TestBlockIdempotence:
    """Re-issuing a block refreshes the existing entry."""

    @pytest.mark.asyncio
    async def test_MUST_keep_one_block_with_refreshed_expiry(
        self, engine: SecurityEngine, enforcer: RecordingEnforcer, clock,
    ) -> None:
        profile = AttackerProfile(source_id=S1, first_seen=clock(), last_seen=clock())
        await engine.dispatcher.dispatch(S1, Severity.HIGH, profile)
        first = profile.countermeasure(CountermeasureKind.BLOCK)
        assert first is not None
        first_expiry = first.expires_at

        clock.advance(120)
        await engine.dispatcher.dispatch(S1, Severity.HIGH, profile)

        blocks = [k for k in profile.active_countermeasures if k is CountermeasureKind.BLOCK]
        assert len(blocks) == 1
        entry = profile.countermeasure(CountermeasureKind.BLOCK)
        assert entry is first
        assert entry.refresh_count == 1
        assert entry.expires_at > first_expiry


# ===================================================================
# Monotonic decay
# ===================================================================

class TestMonotonicDecay:
    """Quiet sources step down one tier per idle period."""

    @pytest.mark.asyncio
    async def test_MUST_step_down_one_tier_per_idle_period(
        self, engine: SecurityEngine, clock,
    ) -> None:
        for _ in range(3):
            engine.scan(UNION_PAYLOAD, "search", source_id=S1)
            await engine.process_pending()
        profile = engine.classifier.profile(S1)
        assert profile.state is ThreatState.BLOCKED

        observed = []
        for _ in range(5):
            clock.advance(engine.config.idle_period_seconds)
            await engine.classifier.decay_all()
            observed.append(profile.state)
        assert observed == [
            ThreatState.FLAGGED,
            ThreatState.WATCHED,
            ThreatState.CLEAN,
            ThreatState.CLEAN,
            ThreatState.CLEAN,
        ]

    @pytest.mark.asyncio
    async def test_MUST_NOT_decay_before_full_idle_period(
        self, engine: SecurityEngine, clock,
    ) -> None:
        engine.scan(UNION_PAYLOAD, "search", source_id=S1)
        await engine.process_pending()
        clock.advance(engine.config.idle_period_seconds - 1)
        assert await engine.classifier.decay_all() == []
        assert engine.classifier.profile(S1).state is ThreatState.WATCHED


# ===================================================================
# End-to-end escalation
# ===================================================================

class TestEndToEndEscalation:
    """Three UNION SELECT requests inside an hour block the source."""

    @pytest.mark.asyncio
    async def test_MUST_escalate_to_blocked_with_one_refreshed_block(
        self,
        engine: SecurityEngine,
        enforcer: RecordingEnforcer,
        interceptor: NullInterceptor,
        clock,
    ) -> None:
        states = []
        for _ in range(3):
            result = engine.scan(UNION_PAYLOAD, "search", source_id=S1)
            assert result.severity is Severity.HIGH
            (classification,) = await engine.process_pending()
            states.append(classification.state)
            clock.advance(900)

        assert states == [ThreatState.WATCHED, ThreatState.FLAGGED, ThreatState.BLOCKED]

        profile = engine.classifier.profile(S1)
        block = profile.countermeasure(CountermeasureKind.BLOCK)
        assert block is not None
        assert block.refresh_count == 2
        assert len(enforcer.calls_to("alert")) == 1
        assert len(engine.honeypots.honeypots_for(S1)) == 1
        assert engine.honeypots.active_count() == 1
        assert interceptor.invalidated


# ===================================================================
# Honeypot feedback
# ===================================================================

class TestHoneypotFeedback:
    """Decoy interactions become findings the classifier sees."""

    @pytest.mark.asyncio
    async def test_MUST_feed_interaction_back_to_classifier(
        self, engine: SecurityEngine, clock,
    ) -> None:
        engine.scan(UNION_PAYLOAD, "search", source_id=S1)
        await engine.process_pending()
        (honeypot,) = engine.honeypots.honeypots_for(S1)

        clock.advance(30)
        finding = engine.record_honeypot_interaction(
            honeypot.honeypot_id, "/api/admin/users", "id=1 UNION SELECT secret FROM vault",
        )
        assert finding is not None
        assert finding.kind is FindingKind.SQL_INJECTION

        classified = await engine.process_pending()
        assert [c.incident.source_id for c in classified] == [S1]
        profile = engine.classifier.profile(S1)
        assert finding in profile.recent_findings
        assert profile.state is ThreatState.FLAGGED
