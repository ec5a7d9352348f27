"""BehaviorAnalyzer: per-session interaction signals and bot heuristics.

Each session keeps a rolling window of its most recent
:class:`SessionSignal` objects.  :meth:`BehaviorAnalyzer.assess` scores the
window against an expected-human profile with fixed sub-check penalties:

====================================  =======
Sub-check                             Penalty
====================================  =======
interval CV below 0.15                0.3
interval spread below 5 ms            0.3
mean interval below 150 ms            0.3
flat navigation shape                 0.2
====================================  =======

A summed confidence above the threshold (default 0.8) yields a MEDIUM
``BEHAVIORAL_ANOMALY`` finding.  These findings are deliberately low
confidence; they only matter when they accumulate with other signals.
"""
from __future__ import annotations

import logging
import re
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from incident_sentinel.core.types import Clock, Finding, FindingKind, Severity, utcnow

if TYPE_CHECKING:
    from incident_sentinel.core.config import EngineConfig

logger = logging.getLogger(__name__)

HEADLESS_USER_AGENT = re.compile(
    r"headless|phantomjs|puppeteer|playwright|selenium|webdriver|python-requests|"
    r"\bcurl/|\bwget/|scrapy",
    re.IGNORECASE,
)

LOW_VARIANCE_CV = 0.15
CONSISTENT_SPREAD_MS = 5.0
FAST_MEAN_INTERVAL_MS = 150.0
FLAT_NAVIGATION_MIN_SIGNALS = 10
MAX_NATURAL_DEPTH = 20

PENALTY_LOW_VARIANCE = 0.3
PENALTY_CONSISTENT = 0.3
PENALTY_VELOCITY = 0.3
PENALTY_FLAT_NAVIGATION = 0.2


@dataclass(frozen=True, slots=True)
class SessionSignal:
    """One interaction event from a session."""

    timestamp: datetime = field(default_factory=utcnow)
    path: str = ""
    depth: int = 0
    user_agent: str = ""
    automation_flag: bool = False


@dataclass(slots=True)
class _Session:
    signals: deque[SessionSignal]
    last_seen: datetime
    total: int = 0
    flagged_at_total: int | None = None
    fingerprinted: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class BehaviorAnalyzer:
    """Rolling per-session behaviour windows.

    Parameters
    ----------
    signal_window:
        Number of most recent signals kept per session.
    min_signals:
        Signals required before :meth:`assess` produces a verdict.
    confidence_threshold:
        Summed penalty above which a finding is emitted.
    session_idle_seconds:
        Idle time after which :meth:`prune` forgets a session.
    """

    def __init__(
        self,
        *,
        signal_window: int = 50,
        min_signals: int = 5,
        confidence_threshold: float = 0.8,
        session_idle_seconds: float = 1800.0,
        clock: Clock = utcnow,
    ) -> None:
        self._window = signal_window
        self._min_signals = min_signals
        self._threshold = confidence_threshold
        self._idle = timedelta(seconds=session_idle_seconds)
        self._clock = clock
        self._sessions: dict[str, _Session] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, *, clock: Clock = utcnow) -> BehaviorAnalyzer:
        return cls(
            signal_window=config.behavior_signal_window,
            min_signals=config.behavior_min_signals,
            confidence_threshold=config.behavior_confidence_threshold,
            session_idle_seconds=config.session_idle_seconds,
            clock=clock,
        )

    # -- input ----------------------------------------------------------------

    def observe(self, session_id: str, signal: SessionSignal) -> None:
        """Append *signal* to the session window.  Never performs I/O."""
        session = self._session(session_id)
        with session.lock:
            session.signals.append(signal)
            session.total += 1
            session.last_seen = self._clock()

    # -- verdicts -------------------------------------------------------------

    def assess(self, session_id: str) -> Finding | None:
        """Score *session_id*'s window; return a finding above threshold.

        A session is reported at most once per full window of new signals.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        with session.lock:
            signals = list(session.signals)
            if len(signals) < self._min_signals:
                return None
            if (
                session.flagged_at_total is not None
                and session.total - session.flagged_at_total < self._window
            ):
                return None
            confidence, checks = score_signals(signals)
            if confidence <= self._threshold:
                return None
            session.flagged_at_total = session.total

        logger.info(
            "Behavioural anomaly in session %s: confidence=%.2f checks=%s",
            session_id, confidence, ",".join(checks),
        )
        return Finding(
            kind=FindingKind.BEHAVIORAL_ANOMALY,
            source_id=session_id,
            severity=Severity.MEDIUM,
            evidence={"checks": checks, "signals": len(signals)},
            timestamp=self._clock(),
            confidence=confidence,
        )

    def assess_all(self) -> list[Finding]:
        """Assess every live session."""
        findings = []
        for session_id in list(self._sessions):
            finding = self.assess(session_id)
            if finding is not None:
                findings.append(finding)
        return findings

    def fingerprint(self, session_id: str) -> Finding | None:
        """Report a headless or automated client, once per session."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        with session.lock:
            if session.fingerprinted or not session.signals:
                return None
            latest = session.signals[-1]
            marker = HEADLESS_USER_AGENT.search(latest.user_agent)
            if marker is None and not latest.automation_flag:
                return None
            session.fingerprinted = True

        reason = "automation_flag" if latest.automation_flag else "user_agent"
        logger.info("Headless client detected in session %s (%s)", session_id, reason)
        return Finding(
            kind=FindingKind.HEADLESS_CLIENT,
            source_id=session_id,
            severity=Severity.MEDIUM,
            evidence={
                "reason": reason,
                "marker": marker.group(0).lower() if marker else None,
            },
            timestamp=self._clock(),
            confidence=0.9 if latest.automation_flag else 0.7,
        )

    # -- housekeeping ---------------------------------------------------------

    def prune(self) -> int:
        """Forget sessions idle longer than the idle period."""
        cutoff = self._clock() - self._idle
        stale = [sid for sid, s in list(self._sessions.items()) if s.last_seen <= cutoff]
        for session_id in stale:
            self._sessions.pop(session_id, None)
        if stale:
            logger.debug("Pruned %d idle sessions", len(stale))
        return len(stale)

    @property
    def sessions(self) -> list[str]:
        return list(self._sessions)

    def _session(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = self._sessions.setdefault(
                session_id,
                _Session(signals=deque(maxlen=self._window), last_seen=self._clock()),
            )
        return session


def score_signals(signals: list[SessionSignal]) -> tuple[float, list[str]]:
    """Return the summed penalty and the names of the sub-checks that fired."""
    checks: list[str] = []
    total = 0.0
    stamps = [s.timestamp for s in signals]
    intervals = [
        (later - earlier).total_seconds() * 1000.0
        for earlier, later in zip(stamps, stamps[1:], strict=False)
    ]
    if intervals:
        mean = statistics.fmean(intervals)
        stdev = statistics.pstdev(intervals)
        cv = stdev / mean if mean > 0 else 0.0
        if cv < LOW_VARIANCE_CV:
            checks.append("low_variance")
            total += PENALTY_LOW_VARIANCE
        if max(intervals) - min(intervals) < CONSISTENT_SPREAD_MS:
            checks.append("consistent_intervals")
            total += PENALTY_CONSISTENT
        if mean < FAST_MEAN_INTERVAL_MS:
            checks.append("velocity")
            total += PENALTY_VELOCITY

    depths = [s.depth for s in signals]
    flat = len(signals) >= FLAT_NAVIGATION_MIN_SIGNALS and len(set(depths)) == 1
    if flat or max(depths) > MAX_NATURAL_DEPTH:
        checks.append("flat_navigation")
        total += PENALTY_FLAT_NAVIGATION
    return round(min(total, 1.0), 6), checks
