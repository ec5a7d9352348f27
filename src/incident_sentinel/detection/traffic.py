"""TrafficMonitor: sliding-window volumetric anomaly detection.

Every request is recorded into its endpoint's sliding window, which keeps
running per-source counts.  On each tick :meth:`TrafficMonitor.evaluate`
aggregates an endpoint's window into a :class:`TrafficSnapshot` and compares
it against the endpoint's :class:`TrafficBaseline` on four signals::

    volume      total_requests / baseline.requests_per_window   > 5
    uniqueness  unique_sources / baseline.unique_sources_per_window > 5
    errors      error_rate                                      > 0.30
    latency     avg_latency_ms / baseline.avg_response_time_ms  > 3

An anomaly requires **at least two** signals; a single spike is noise.
The composite score that picks the severity is::

    0.4 * volume + 0.3 * uniqueness + 0.2 * (error_rate / baseline.error_rate)
        + 0.1 * latency

The baseline is an EWMA over non-anomalous, non-empty windows only, so an
ongoing attack never drags the reference toward itself.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING

from incident_sentinel.core.types import Clock, Finding, FindingKind, Severity, utcnow

if TYPE_CHECKING:
    from incident_sentinel.core.config import EngineConfig

logger = logging.getLogger(__name__)

ENDPOINT_SOURCE_PREFIX = "endpoint:"

# Score -> severity, highest first.  Scores at or below 1 produce no finding.
_SCORE_TIERS: tuple[tuple[float, Severity], ...] = (
    (10.0, Severity.CRITICAL),
    (5.0, Severity.HIGH),
    (2.0, Severity.MEDIUM),
    (1.0, Severity.LOW),
)

_MIN_REQUESTS = 1.0
_MIN_UNIQUE = 1.0
_MIN_LATENCY_MS = 1.0
_MIN_ERROR_RATE = 0.001


def severity_for_score(score: float) -> Severity | None:
    """Map a composite anomaly score to a severity, or ``None`` below LOW."""
    for floor, severity in _SCORE_TIERS:
        if score > floor:
            return severity
    return None


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RequestOutcome:
    """How a single request went."""

    latency_ms: float
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class TrafficSnapshot:
    """Aggregate of one endpoint's sliding window."""

    endpoint: str
    total_requests: int
    unique_sources: int
    avg_latency_ms: float
    error_rate: float
    per_source: Mapping[str, int] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def empty(self) -> bool:
        return self.total_requests == 0


@dataclass(slots=True)
class TrafficBaseline:
    """Exponentially smoothed reference traffic for one endpoint.

    Every value is kept strictly positive so the ratios in
    :meth:`TrafficMonitor.evaluate` are always defined.
    """

    requests_per_window: float = 100.0
    unique_sources_per_window: float = 50.0
    avg_response_time_ms: float = 200.0
    error_rate: float = 0.02
    alpha: float = 0.1
    samples: int = 0
    last_updated: datetime | None = None

    def __post_init__(self) -> None:
        if not (0 < self.alpha <= 1):
            msg = f"alpha must be in (0, 1], got {self.alpha}"
            raise ValueError(msg)

    def update(self, snapshot: TrafficSnapshot) -> None:
        """Blend *snapshot* into the baseline."""
        a = self.alpha
        self.requests_per_window = max(
            _MIN_REQUESTS,
            a * snapshot.total_requests + (1 - a) * self.requests_per_window,
        )
        self.unique_sources_per_window = max(
            _MIN_UNIQUE,
            a * snapshot.unique_sources + (1 - a) * self.unique_sources_per_window,
        )
        self.avg_response_time_ms = max(
            _MIN_LATENCY_MS,
            a * snapshot.avg_latency_ms + (1 - a) * self.avg_response_time_ms,
        )
        self.error_rate = max(
            _MIN_ERROR_RATE,
            a * snapshot.error_rate + (1 - a) * self.error_rate,
        )
        self.samples += 1
        self.last_updated = snapshot.taken_at


@dataclass(frozen=True, slots=True)
class AnomalyVerdict:
    """Result of evaluating one endpoint.

    Attributes
    ----------
    anomalous:
        ``True`` when at least two signals exceeded their threshold.
    signals:
        Names of the signals that exceeded (``volume``, ``unique_sources``,
        ``error_rate``, ``latency``).
    score:
        Weighted composite score.
    severity:
        Severity derived from *score*, or ``None`` when no anomaly finding
        was emitted.
    findings:
        Volumetric and rate-limit findings produced by this evaluation.
    baseline_updated:
        Whether this window was folded into the baseline.
    """

    endpoint: str
    snapshot: TrafficSnapshot
    anomalous: bool
    signals: tuple[str, ...] = ()
    ratios: Mapping[str, float] = field(default_factory=dict)
    score: float = 0.0
    severity: Severity | None = None
    findings: tuple[Finding, ...] = ()
    baseline_updated: bool = False


@dataclass(slots=True)
class _Hit:
    at: datetime
    source_id: str
    latency_ms: float
    is_error: bool


class _EndpointWindow:
    """Time-ordered hits for one endpoint plus running aggregates.

    Hits arrive in clock order, so expiry only ever pops from the left and
    touches nothing but the expired entries.
    """

    __slots__ = ("hits", "counts", "latency_total", "errors", "reported", "_reported_order")

    def __init__(self) -> None:
        self.hits: deque[_Hit] = deque()
        self.counts: dict[str, int] = {}
        self.latency_total = 0.0
        self.errors = 0
        # source -> when its rate-limit finding was emitted
        self.reported: dict[str, datetime] = {}
        self._reported_order: deque[tuple[datetime, str]] = deque()

    @property
    def idle(self) -> bool:
        return not self.hits and not self.reported

    def add(self, hit: _Hit) -> None:
        self.hits.append(hit)
        self.counts[hit.source_id] = self.counts.get(hit.source_id, 0) + 1
        self.latency_total += hit.latency_ms
        if hit.is_error:
            self.errors += 1

    def mark_reported(self, source_id: str, at: datetime) -> None:
        self.reported[source_id] = at
        self._reported_order.append((at, source_id))

    def expire(self, cutoff: datetime) -> None:
        hits = self.hits
        while hits and hits[0].at <= cutoff:
            hit = hits.popleft()
            remaining = self.counts[hit.source_id] - 1
            if remaining:
                self.counts[hit.source_id] = remaining
            else:
                del self.counts[hit.source_id]
            self.latency_total -= hit.latency_ms
            if hit.is_error:
                self.errors -= 1
        if not hits:
            # float drift
            self.latency_total = 0.0
            self.errors = 0
        order = self._reported_order
        while order and order[0][0] <= cutoff:
            _, source_id = order.popleft()
            del self.reported[source_id]


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class TrafficMonitor:
    """Per-endpoint sliding windows, baselines and anomaly evaluation.

    ``record`` and ``evaluate`` for the same endpoint are serialised by a
    per-endpoint ``threading.Lock``; different endpoints never contend.
    Endpoints whose window drains and which never learned a baseline are
    forgotten entirely, lock included.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 60.0,
        baseline_template: TrafficBaseline | None = None,
        volume_ratio_threshold: float = 5.0,
        unique_source_ratio_threshold: float = 5.0,
        error_rate_threshold: float = 0.30,
        latency_ratio_threshold: float = 3.0,
        per_source_request_limit: int = 60,
        heavy_hitter_threshold: int = 100,
        clock: Clock = utcnow,
    ) -> None:
        self._window = timedelta(seconds=window_seconds)
        self._template = baseline_template or TrafficBaseline()
        self._volume_threshold = volume_ratio_threshold
        self._unique_threshold = unique_source_ratio_threshold
        self._error_threshold = error_rate_threshold
        self._latency_threshold = latency_ratio_threshold
        self._rate_limit = per_source_request_limit
        self._heavy_hitter = heavy_hitter_threshold
        self._clock = clock

        self._windows: dict[str, _EndpointWindow] = {}
        self._baselines: dict[str, TrafficBaseline] = {}
        self._locks: dict[str, threading.Lock] = {}

    @classmethod
    def from_config(cls, config: EngineConfig, *, clock: Clock = utcnow) -> TrafficMonitor:
        """Build a monitor from *config*."""
        template = TrafficBaseline(
            requests_per_window=config.baseline_requests_per_window,
            unique_sources_per_window=config.baseline_unique_sources_per_window,
            avg_response_time_ms=config.baseline_avg_response_time_ms,
            error_rate=config.baseline_error_rate,
            alpha=config.baseline_smoothing_alpha,
        )
        return cls(
            window_seconds=config.window_seconds,
            baseline_template=template,
            volume_ratio_threshold=config.volume_ratio_threshold,
            unique_source_ratio_threshold=config.unique_source_ratio_threshold,
            error_rate_threshold=config.error_rate_threshold,
            latency_ratio_threshold=config.latency_ratio_threshold,
            per_source_request_limit=config.per_source_request_limit,
            heavy_hitter_threshold=config.heavy_hitter_threshold,
            clock=clock,
        )

    # -- recording ------------------------------------------------------------

    def record(self, source_id: str, endpoint: str, outcome: RequestOutcome) -> None:
        """Record one request.  Never performs I/O.

        Cost is amortised constant: only hits that fell out of the window
        since the previous call are visited.
        """
        now = self._clock()
        with self._endpoint_locked(endpoint):
            window = self._windows.get(endpoint)
            if window is None:
                window = self._windows[endpoint] = _EndpointWindow()
            window.expire(now - self._window)
            window.add(_Hit(now, source_id, outcome.latency_ms, outcome.is_error))

    # -- evaluation -----------------------------------------------------------

    def evaluate(self, endpoint: str) -> AnomalyVerdict:
        """Evaluate *endpoint*'s current window against its baseline."""
        now = self._clock()
        with self._endpoint_locked(endpoint):
            window = self._expire_locked(endpoint, now)
            snapshot = self._snapshot_locked(endpoint, window, now)
            if snapshot.empty:
                self._discard_if_idle_locked(endpoint)
                return AnomalyVerdict(endpoint=endpoint, snapshot=snapshot, anomalous=False)

            baseline = self._baselines.get(endpoint)
            if baseline is None:
                baseline = replace(self._template)

            ratios = {
                "volume": snapshot.total_requests / baseline.requests_per_window,
                "unique_sources": snapshot.unique_sources / baseline.unique_sources_per_window,
                "error_rate": snapshot.error_rate / baseline.error_rate,
                "latency": snapshot.avg_latency_ms / baseline.avg_response_time_ms,
            }
            signals = tuple(
                name for name, exceeded in (
                    ("volume", ratios["volume"] > self._volume_threshold),
                    ("unique_sources", ratios["unique_sources"] > self._unique_threshold),
                    ("error_rate", snapshot.error_rate > self._error_threshold),
                    ("latency", ratios["latency"] > self._latency_threshold),
                ) if exceeded
            )
            anomalous = len(signals) >= 2
            score = (
                0.4 * ratios["volume"]
                + 0.3 * ratios["unique_sources"]
                + 0.2 * ratios["error_rate"]
                + 0.1 * ratios["latency"]
            )

            findings: list[Finding] = []
            severity: Severity | None = None
            if anomalous:
                severity = severity_for_score(score)
                if severity is not None:
                    findings.extend(
                        self._volumetric_findings(snapshot, signals, ratios, score, severity)
                    )
                logger.warning(
                    "Volumetric anomaly on %s: signals=%s score=%.2f severity=%s",
                    endpoint, ",".join(signals), score, severity,
                )
            else:
                baseline.update(snapshot)
                self._baselines[endpoint] = baseline

            findings.extend(self._rate_limit_findings(window, snapshot, now))

        return AnomalyVerdict(
            endpoint=endpoint,
            snapshot=snapshot,
            anomalous=anomalous,
            signals=signals,
            ratios=MappingProxyType(ratios),
            score=score,
            severity=severity,
            findings=tuple(findings),
            baseline_updated=not anomalous,
        )

    def evaluate_all(self) -> list[AnomalyVerdict]:
        """Evaluate every endpoint with a live window."""
        return [self.evaluate(endpoint) for endpoint in list(self._windows)]

    # -- introspection --------------------------------------------------------

    def baseline(self, endpoint: str) -> TrafficBaseline:
        """Return a copy of *endpoint*'s baseline (the template if unseen)."""
        if endpoint not in self._baselines:
            return replace(self._template)
        with self._endpoint_locked(endpoint):
            return replace(self._baselines.get(endpoint, self._template))

    def snapshot(self, endpoint: str) -> TrafficSnapshot:
        """Return the current window aggregate for *endpoint*."""
        now = self._clock()
        with self._endpoint_locked(endpoint):
            window = self._expire_locked(endpoint, now)
            snapshot = self._snapshot_locked(endpoint, window, now)
            self._discard_if_idle_locked(endpoint)
            return snapshot

    @property
    def endpoints(self) -> list[str]:
        return list(self._windows)

    # -- internals ------------------------------------------------------------

    def _lock_for(self, endpoint: str) -> threading.Lock:
        lock = self._locks.get(endpoint)
        if lock is None:
            lock = self._locks.setdefault(endpoint, threading.Lock())
        return lock

    @contextmanager
    def _endpoint_locked(self, endpoint: str) -> Iterator[None]:
        # A discarded endpoint's lock may still have waiters; they retry on
        # whichever lock is registered once they get in.
        while True:
            lock = self._lock_for(endpoint)
            lock.acquire()
            if self._locks.get(endpoint) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _expire_locked(self, endpoint: str, now: datetime) -> _EndpointWindow | None:
        window = self._windows.get(endpoint)
        if window is not None:
            window.expire(now - self._window)
        return window

    def _discard_if_idle_locked(self, endpoint: str) -> None:
        window = self._windows.get(endpoint)
        if window is not None and not window.idle:
            return
        self._windows.pop(endpoint, None)
        if endpoint not in self._baselines:
            self._locks.pop(endpoint, None)

    def _snapshot_locked(
        self, endpoint: str, window: _EndpointWindow | None, now: datetime,
    ) -> TrafficSnapshot:
        total = len(window.hits) if window is not None else 0
        if total == 0:
            return TrafficSnapshot(
                endpoint=endpoint, total_requests=0, unique_sources=0,
                avg_latency_ms=0.0, error_rate=0.0, taken_at=now,
            )
        return TrafficSnapshot(
            endpoint=endpoint,
            total_requests=total,
            unique_sources=len(window.counts),
            avg_latency_ms=window.latency_total / total,
            error_rate=window.errors / total,
            per_source=MappingProxyType(dict(window.counts)),
            taken_at=now,
        )

    def _volumetric_findings(
        self,
        snapshot: TrafficSnapshot,
        signals: tuple[str, ...],
        ratios: dict[str, float],
        score: float,
        severity: Severity,
    ) -> list[Finding]:
        evidence = {
            "endpoint": snapshot.endpoint,
            "signals": list(signals),
            "score": round(score, 3),
            "total_requests": snapshot.total_requests,
            "unique_sources": snapshot.unique_sources,
            "avg_latency_ms": round(snapshot.avg_latency_ms, 3),
            "error_rate": round(snapshot.error_rate, 4),
            "ratios": {k: round(v, 3) for k, v in ratios.items()},
        }
        confidence = len(signals) / 4
        findings = [Finding(
            kind=FindingKind.VOLUMETRIC_ANOMALY,
            source_id=f"{ENDPOINT_SOURCE_PREFIX}{snapshot.endpoint}",
            severity=severity,
            evidence=evidence,
            timestamp=snapshot.taken_at,
            confidence=confidence,
        )]
        for source_id, count in snapshot.per_source.items():
            if count > self._heavy_hitter:
                findings.append(Finding(
                    kind=FindingKind.VOLUMETRIC_ANOMALY,
                    source_id=source_id,
                    severity=severity,
                    evidence={**evidence, "source_requests": count},
                    timestamp=snapshot.taken_at,
                    confidence=confidence,
                ))
        return findings

    def _rate_limit_findings(
        self, window: _EndpointWindow, snapshot: TrafficSnapshot, now: datetime,
    ) -> list[Finding]:
        findings: list[Finding] = []
        for source_id, count in snapshot.per_source.items():
            if count <= self._rate_limit or source_id in window.reported:
                continue
            window.mark_reported(source_id, now)
            logger.info(
                "Rate limit exceeded by %s on %s: %d requests", source_id, snapshot.endpoint, count,
            )
            findings.append(Finding(
                kind=FindingKind.RATE_LIMIT_EXCEEDED,
                source_id=source_id,
                severity=Severity.MEDIUM,
                evidence={
                    "endpoint": snapshot.endpoint,
                    "requests": count,
                    "limit": self._rate_limit,
                    "window_seconds": self._window.total_seconds(),
                },
                timestamp=now,
            ))
        return findings
