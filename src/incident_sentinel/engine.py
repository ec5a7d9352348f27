"""SecurityEngine -- the main orchestrator.

This module implements :class:`SecurityEngine`, the primary entry point of
Incident Sentinel.  It composes the detectors, the response pipeline and
the incident log, and exposes a small query surface for operators.

Pipeline
--------

1. **Detect** -- ``scan`` / ``record`` / ``observe`` run on the request path.
   They are synchronous, never perform I/O, and queue any findings.
2. **Classify** -- :meth:`SecurityEngine.process_pending` feeds queued
   findings to the :class:`~incident_sentinel.response.classifier.ThreatClassifier`,
   which advances per-source state and dispatches countermeasures.
3. **Maintain** -- :meth:`SecurityEngine.tick` evaluates traffic windows,
   assesses sessions, drains honeypot findings, decays idle profiles,
   expires honeypots and countermeasures, evicts idle profiles and flushes
   the incident log.

Usage
-----
::

    from incident_sentinel import EngineConfig, SecurityEngine
    from incident_sentinel.core.interfaces import InMemoryIncidentStore

    engine = SecurityEngine(
        EngineConfig(),
        my_enforcer,
        store=InMemoryIncidentStore(),
    )
    result = engine.scan(form["username"], "username", source_id=client_ip)
    await engine.tick()
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from incident_sentinel.audit.incident_log import IncidentLog
from incident_sentinel.core.types import Clock, Finding, Severity, utcnow
from incident_sentinel.detection.behavioral import BehaviorAnalyzer
from incident_sentinel.detection.scanner import PatternScanner
from incident_sentinel.detection.traffic import TrafficMonitor
from incident_sentinel.response.classifier import ThreatClassifier
from incident_sentinel.response.dispatcher import CountermeasureDispatcher
from incident_sentinel.response.honeypot import HoneypotRegistry, Interaction

if TYPE_CHECKING:
    from collections.abc import Iterable

    from incident_sentinel.core.config import EngineConfig
    from incident_sentinel.core.interfaces import Enforcer, IncidentStore, RequestInterceptor
    from incident_sentinel.detection.behavioral import SessionSignal
    from incident_sentinel.detection.scanner import ScanResult
    from incident_sentinel.detection.signatures import Signature
    from incident_sentinel.detection.traffic import RequestOutcome
    from incident_sentinel.response.classifier import Classification, Incident
    from incident_sentinel.response.honeypot import AttackerIntelligence
    from incident_sentinel.response.profile import AttackerProfile

logger = logging.getLogger(__name__)

_THREAT_LEVEL_WINDOW = timedelta(hours=1)


@dataclass(frozen=True, slots=True)
class EngineStatus:
    """Point-in-time view of the engine for dashboards and health checks.

    Attributes
    ----------
    threat_level:
        Global level derived from incidents in the last hour.
    active_countermeasures:
        ``source_id -> [countermeasure dict, ...]`` for every source with a
        countermeasure in force or awaiting enforcement.
    recent_incidents:
        Most recent incident records (serialised), oldest first.
    stale:
        ``True`` when ``recent_incidents`` came from the in-memory ring
        because the incident store could not be read.
    """

    threat_level: Severity
    active_countermeasures: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    recent_incidents: list[dict[str, Any]] = field(default_factory=list)
    stale: bool = False
    log_degraded: bool = False
    enforcer_degraded: bool = False
    pending_findings: int = 0
    active_honeypots: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_level": self.threat_level.value,
            "active_countermeasures": {
                source: list(entries)
                for source, entries in self.active_countermeasures.items()
            },
            "recent_incidents": list(self.recent_incidents),
            "stale": self.stale,
            "log_degraded": self.log_degraded,
            "enforcer_degraded": self.enforcer_degraded,
            "pending_findings": self.pending_findings,
            "active_honeypots": self.active_honeypots,
        }


def threat_level_for(incidents: Iterable[Incident]) -> Severity:
    """Derive the global threat level from a set of recent incidents."""
    incidents = list(incidents)
    severe = sum(
        1 for i in incidents
        if i.assigned_severity in (Severity.HIGH, Severity.CRITICAL)
    )
    if severe >= 3:
        return Severity.CRITICAL
    if severe >= 1:
        return Severity.HIGH
    if len(incidents) >= 5:
        return Severity.MEDIUM
    return Severity.LOW


class SecurityEngine:
    """Composes the detectors, the classifier and the dispatcher.

    Parameters
    ----------
    config:
        Engine configuration; the response table in it is validated here and
        a malformed one raises
        :class:`~incident_sentinel.core.errors.MalformedSeverityTable`.
    enforcer:
        External enforcement substrate (blocks, throttles, alerts).
    store:
        Optional durable incident store.  When ``None`` the incident log
        runs in memory only.
    interceptor:
        Optional request interceptor.  It is attached to the engine at
        construction and used for session invalidation.
    signatures:
        Replacement signature library.  Defaults to the standard library.
    clock:
        Time source; tests pass a controllable fake.
    rng:
        Random source for throttle jitter and decoy data.
    """

    def __init__(
        self,
        config: EngineConfig,
        enforcer: Enforcer,
        *,
        store: IncidentStore | None = None,
        interceptor: RequestInterceptor | None = None,
        signatures: Iterable[Signature] | None = None,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._rng = rng or random.Random()
        cfg = self._config

        self._log = IncidentLog(store, buffer_limit=cfg.log_buffer_limit)
        if signatures is None:
            self._scanner = PatternScanner.from_config(cfg, incident_log=self._log, clock=clock)
        else:
            self._scanner = PatternScanner(
                signatures,
                whitelist=cfg.whitelist,
                context_length_limits=cfg.context_length_limits,
                evidence_max_length=cfg.evidence_max_length,
                incident_log=self._log,
                clock=clock,
            )
        self._traffic = TrafficMonitor.from_config(cfg, clock=clock)
        self._behavior = BehaviorAnalyzer.from_config(cfg, clock=clock)
        self._honeypots = HoneypotRegistry(
            self._scanner,
            ttl_seconds=cfg.honeypot_ttl_seconds,
            retention_seconds=cfg.honeypot_retention_seconds,
            incident_log=self._log,
            evidence_max_length=cfg.evidence_max_length,
            clock=clock,
            rng=self._rng,
        )
        self._dispatcher = CountermeasureDispatcher.from_config(
            cfg,
            enforcer,
            honeypots=self._honeypots,
            interceptor=interceptor,
            incident_log=self._log,
            clock=clock,
            rng=self._rng,
        )
        self._classifier = ThreatClassifier.from_config(
            cfg, self._dispatcher, incident_log=self._log, clock=clock,
        )

        self._pending: deque[Finding] = deque()
        self._tick_task: asyncio.Task[None] | None = None
        self._interceptor = interceptor
        if interceptor is not None:
            interceptor.attach(self)

    # -- component accessors --------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def scanner(self) -> PatternScanner:
        return self._scanner

    @property
    def traffic(self) -> TrafficMonitor:
        return self._traffic

    @property
    def behavior(self) -> BehaviorAnalyzer:
        return self._behavior

    @property
    def honeypots(self) -> HoneypotRegistry:
        return self._honeypots

    @property
    def dispatcher(self) -> CountermeasureDispatcher:
        return self._dispatcher

    @property
    def classifier(self) -> ThreatClassifier:
        return self._classifier

    @property
    def incident_log(self) -> IncidentLog:
        return self._log

    @property
    def pending(self) -> int:
        """Number of findings waiting for classification."""
        return len(self._pending)

    # -- input boundary (sync, request path) ----------------------------------

    def scan(
        self,
        value: Any,
        context: str = "unknown",
        *,
        source_id: str,
    ) -> ScanResult:
        """Scan one input field and queue any findings.  Never raises.

        *source_id* has no default; every finding is classified against the
        profile of the client that sent it.
        """
        result = self._scanner.scan(value, context, source_id=source_id)
        if not result.safe:
            self._pending.extend(result.findings)
        return result

    def record(self, source_id: str, endpoint: str, outcome: RequestOutcome) -> None:
        """Record one completed request for volumetric analysis."""
        self._traffic.record(source_id, endpoint, outcome)

    def observe(self, session_id: str, signal: SessionSignal) -> Finding | None:
        """Record one session signal; fingerprint the client on the way.

        Returns the headless-client finding, if this signal produced one.
        """
        self._behavior.observe(session_id, signal)
        finding = self._behavior.fingerprint(session_id)
        if finding is not None:
            self._pending.append(finding)
        return finding

    def submit(self, finding: Finding) -> None:
        """Queue an externally produced finding for classification."""
        self._pending.append(finding)

    def record_honeypot_interaction(
        self,
        honeypot_id: str,
        resource: str,
        payload: Any = None,
    ) -> Finding | None:
        """Record a request that touched a decoy.

        A signature hit in *payload* produces a finding that is classified
        on the next :meth:`process_pending` or :meth:`tick`.

        Raises
        ------
        UnknownHoneypot
            If *honeypot_id* was never deployed.
        """
        return self._honeypots.record_interaction(
            honeypot_id,
            Interaction(resource=resource, payload=payload, timestamp=self._clock()),
        )

    # -- classification -------------------------------------------------------

    async def process_pending(self) -> list[Classification]:
        """Classify every queued finding (honeypot findings included).

        Each source's findings are classified in arrival order, while
        different sources run concurrently: a slow enforcer call for one
        source never holds up another.  Results follow arrival order.
        """
        self._pending.extend(self._honeypots.drain_findings())
        batch = list(self._pending)
        self._pending.clear()
        by_source: dict[str, list[int]] = {}
        for index, finding in enumerate(batch):
            by_source.setdefault(finding.source_id, []).append(index)

        results: list[Classification | None] = [None] * len(batch)

        async def _drain(indices: list[int]) -> None:
            for position, index in enumerate(indices):
                try:
                    results[index] = await self._classifier.classify(batch[index])
                except Exception:
                    self._pending.extend(batch[i] for i in indices[position + 1:])
                    raise

        outcomes = await asyncio.gather(
            *(_drain(indices) for indices in by_source.values()),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                raise outcome
        return [r for r in results if r is not None]

    async def tick(self) -> list[Classification]:
        """Run one maintenance cycle and return the classifications it made."""
        for verdict in self._traffic.evaluate_all():
            self._pending.extend(verdict.findings)
        self._pending.extend(self._behavior.assess_all())
        self._behavior.prune()
        self._honeypots.expire()

        classifications = await self.process_pending()
        await self._classifier.decay_all()
        await self._classifier.prune_countermeasures()
        await self._classifier.evict_idle()
        await self._log.flush()
        return classifications

    async def start(self) -> None:
        """Start the periodic tick task.  Idempotent."""
        if self._tick_task is not None and not self._tick_task.done():
            return
        self._tick_task = asyncio.create_task(self._run(), name="incident-sentinel-tick")
        logger.info("Engine started (tick every %.1fs)", self._config.tick_seconds)

    async def stop(self) -> None:
        """Cancel the tick task and flush the incident log."""
        task, self._tick_task = self._tick_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._log.flush()
        logger.info("Engine stopped")

    async def __aenter__(self) -> SecurityEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def release(self, source_id: str) -> bool:
        """Release *source_id*'s block after manual review."""
        return await self._classifier.release(source_id)

    # -- query surface ----------------------------------------------------------

    async def get_status(self) -> EngineStatus:
        """Return the engine's current status."""
        records = await self._log.recent(self._config.recent_incident_limit)
        stale = self._log.degraded
        incidents = [
            r.model_dump(mode="json") for r in records if r.record_type == "incident"
        ]
        cutoff = self._clock() - _THREAT_LEVEL_WINDOW
        recent = [i for i in self._classifier.recent_incidents() if i.created_at > cutoff]
        active = {
            p.source_id: [entry.to_dict() for entry in p.active_countermeasures.values()]
            for p in self._classifier.profiles()
            if p.active_countermeasures
        }
        return EngineStatus(
            threat_level=threat_level_for(recent),
            active_countermeasures=active,
            recent_incidents=incidents,
            stale=stale,
            log_degraded=self._log.degraded,
            enforcer_degraded=self._dispatcher.enforcer_degraded,
            pending_findings=len(self._pending),
            active_honeypots=self._honeypots.active_count(),
        )

    def get_attacker_profiles(self) -> list[AttackerProfile]:
        """Return every in-memory attacker profile."""
        return self._classifier.profiles()

    def get_honeypot_intelligence(self, source_id: str) -> AttackerIntelligence:
        """Summarise *source_id*'s honeypot engagement.  Read-only."""
        return self._honeypots.summarize(source_id)

    # -- internals ------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Engine tick failed; retrying next interval")
            await asyncio.sleep(self._config.tick_seconds)
