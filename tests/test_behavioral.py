"""Tests for the BehaviorAnalyzer."""
from __future__ import annotations

from datetime import timedelta

import pytest

from incident_sentinel.core.types import FindingKind, Severity
from incident_sentinel.detection.behavioral import (
    BehaviorAnalyzer,
    SessionSignal,
    score_signals,
)


def _signals(clock, intervals_ms: list[float], depths: list[int] | None = None) -> list[SessionSignal]:
    at = clock.now
    signals = [SessionSignal(timestamp=at, path="/p0", depth=(depths or [1])[0])]
    for i, interval in enumerate(intervals_ms, start=1):
        at = at + timedelta(milliseconds=interval)
        depth = depths[i] if depths else 1
        signals.append(SessionSignal(timestamp=at, path=f"/p{i}", depth=depth))
    return signals


@pytest.fixture()
def analyzer(clock) -> BehaviorAnalyzer:
    return BehaviorAnalyzer(signal_window=10, min_signals=5, clock=clock)


class TestScoreSignals:
    """Sub-check penalties."""

    def test_metronomic_fast_flat_session_scores_max(self, clock) -> None:
        score, checks = score_signals(_signals(clock, [100.0] * 9))
        assert score == 1.0
        assert checks == ["low_variance", "consistent_intervals", "velocity", "flat_navigation"]

    def test_three_timing_checks_exceed_threshold(self, clock) -> None:
        signals = _signals(clock, [100.0] * 5, depths=[1, 2, 3, 2, 1, 2])
        score, checks = score_signals(signals)
        assert score == pytest.approx(0.9)
        assert "flat_navigation" not in checks

    def test_human_session_scores_zero(self, clock) -> None:
        signals = _signals(clock, [800.0, 2400.0, 450.0, 3100.0, 1200.0], depths=[0, 1, 2, 1, 3, 2])
        assert score_signals(signals) == (0.0, [])

    def test_excessive_depth_counts_as_flat_navigation(self, clock) -> None:
        signals = _signals(clock, [800.0, 2400.0], depths=[1, 5, 25])
        _, checks = score_signals(signals)
        assert checks == ["flat_navigation"]


class TestAssess:
    """Tests for BehaviorAnalyzer.assess."""

    def test_bot_session_is_reported(self, analyzer: BehaviorAnalyzer, clock) -> None:
        for signal in _signals(clock, [100.0] * 9):
            analyzer.observe("sess-1", signal)
        finding = analyzer.assess("sess-1")
        assert finding is not None
        assert finding.kind is FindingKind.BEHAVIORAL_ANOMALY
        assert finding.severity is Severity.MEDIUM
        assert finding.source_id == "sess-1"
        assert finding.confidence == 1.0

    def test_too_few_signals(self, analyzer: BehaviorAnalyzer, clock) -> None:
        for signal in _signals(clock, [100.0] * 3):
            analyzer.observe("sess-1", signal)
        assert analyzer.assess("sess-1") is None

    def test_unknown_session(self, analyzer: BehaviorAnalyzer) -> None:
        assert analyzer.assess("nope") is None

    def test_reported_once_per_window(self, analyzer: BehaviorAnalyzer, clock) -> None:
        signals = _signals(clock, [100.0] * 29)
        for signal in signals[:10]:
            analyzer.observe("sess-1", signal)
        assert analyzer.assess("sess-1") is not None
        for signal in signals[10:19]:
            analyzer.observe("sess-1", signal)
        assert analyzer.assess("sess-1") is None
        analyzer.observe("sess-1", signals[19])
        assert analyzer.assess("sess-1") is not None

    def test_assess_all(self, analyzer: BehaviorAnalyzer, clock) -> None:
        for signal in _signals(clock, [100.0] * 9):
            analyzer.observe("bot", signal)
        for signal in _signals(clock, [800.0, 2400.0, 450.0, 3100.0, 1200.0], [0, 1, 2, 1, 3, 2]):
            analyzer.observe("human", signal)
        assert [f.source_id for f in analyzer.assess_all()] == ["bot"]


class TestFingerprint:
    """Headless-client detection."""

    def test_headless_user_agent(self, analyzer: BehaviorAnalyzer) -> None:
        analyzer.observe("s", SessionSignal(user_agent="Mozilla/5.0 HeadlessChrome/120.0"))
        finding = analyzer.fingerprint("s")
        assert finding is not None
        assert finding.kind is FindingKind.HEADLESS_CLIENT
        assert finding.confidence == pytest.approx(0.7)
        assert finding.evidence["marker"] == "headless"

    def test_automation_flag(self, analyzer: BehaviorAnalyzer) -> None:
        analyzer.observe("s", SessionSignal(user_agent="Mozilla/5.0", automation_flag=True))
        finding = analyzer.fingerprint("s")
        assert finding is not None
        assert finding.confidence == pytest.approx(0.9)

    def test_reported_once_per_session(self, analyzer: BehaviorAnalyzer) -> None:
        analyzer.observe("s", SessionSignal(user_agent="python-requests/2.31"))
        assert analyzer.fingerprint("s") is not None
        analyzer.observe("s", SessionSignal(user_agent="python-requests/2.31"))
        assert analyzer.fingerprint("s") is None

    def test_regular_browser(self, analyzer: BehaviorAnalyzer) -> None:
        analyzer.observe("s", SessionSignal(user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0"))
        assert analyzer.fingerprint("s") is None


class TestPrune:
    """Idle sessions are forgotten."""

    def test_idle_sessions_pruned(self, clock) -> None:
        analyzer = BehaviorAnalyzer(session_idle_seconds=60, clock=clock)
        analyzer.observe("old", SessionSignal())
        clock.advance(30)
        analyzer.observe("new", SessionSignal())
        clock.advance(31)
        assert analyzer.prune() == 1
        assert analyzer.sessions == ["new"]
