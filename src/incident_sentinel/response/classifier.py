"""ThreatClassifier: the per-source escalation state machine.

States move ``CLEAN -> WATCHED -> FLAGGED -> BLOCKED``:

* ``CLEAN -> WATCHED``: any MEDIUM or higher finding.
* ``WATCHED -> FLAGGED``: a second finding inside the decay window while
  WATCHED, or any CRITICAL finding.
* ``FLAGGED -> BLOCKED``: three or more HIGH/CRITICAL findings inside the
  decay window, or any finding arriving while already FLAGGED with a
  reputation below the blocked threshold.

Transitions cascade within a single classification.  Each idle period
without findings steps the state (and the current severity) down one tier.

The response is driven by *severity*, not by state: on every transition
the incident severity is the maximum severity among the findings in the
correlation window, and that severity selects the countermeasures.
Entering BLOCKED additionally escalates (adds an alert).
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from incident_sentinel.audit.records import create_incident_record
from incident_sentinel.core.types import (
    Clock,
    Finding,
    Severity,
    ThreatState,
    max_severity,
    utcnow,
)
from incident_sentinel.response.profile import AttackerProfile

if TYPE_CHECKING:
    from incident_sentinel.audit.incident_log import IncidentLog
    from incident_sentinel.core.config import EngineConfig
    from incident_sentinel.response.dispatcher import (
        CountermeasureDispatcher,
        CountermeasureOutcome,
    )

logger = logging.getLogger(__name__)

_BLOCKING_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)
_RESTORE_SCAN_DEPTH = 1000

_DEFAULT_PENALTIES: dict[Severity, float] = {
    Severity.LOW: 0.05,
    Severity.MEDIUM: 0.1,
    Severity.HIGH: 0.2,
    Severity.CRITICAL: 0.4,
}


@dataclass(frozen=True, slots=True)
class Incident:
    """One classification decision for one source."""

    source_id: str
    findings: tuple[Finding, ...]
    assigned_severity: Severity | None
    previous_state: ThreatState
    new_state: ThreatState
    countermeasures_dispatched: tuple[CountermeasureOutcome, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    incident_id: str = field(default_factory=lambda: f"inc-{uuid.uuid4().hex[:16]}")

    @property
    def transitioned(self) -> bool:
        return self.previous_state is not self.new_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "source_id": self.source_id,
            "assigned_severity": self.assigned_severity.value if self.assigned_severity else None,
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "created_at": self.created_at.isoformat(),
            "findings": [f.to_dict() for f in self.findings],
            "countermeasures_dispatched": [
                {"kind": o.kind.value, "status": o.status.value, "attempts": o.attempts}
                for o in self.countermeasures_dispatched
            ],
        }


@dataclass(frozen=True, slots=True)
class Classification:
    """Result of :meth:`ThreatClassifier.classify`."""

    incident: Incident
    transitions: tuple[tuple[ThreatState, ThreatState], ...] = ()

    @property
    def state(self) -> ThreatState:
        return self.incident.new_state


class ThreatClassifier:
    """Maintains attacker profiles and drives the dispatcher.

    Each source has its own ``asyncio.Lock``; classifications for the same
    source are linearised, different sources proceed independently.
    """

    def __init__(
        self,
        dispatcher: CountermeasureDispatcher,
        *,
        incident_log: IncidentLog | None = None,
        decay_window_seconds: float = 3600.0,
        idle_period_seconds: float = 3600.0,
        correlation_window_seconds: float = 300.0,
        profile_eviction_seconds: float = 86400.0,
        blocked_reputation_threshold: float = 0.3,
        reputation_recovery_per_hour: float = 0.05,
        reputation_penalties: Mapping[Severity, float] | None = None,
        recent_incident_limit: int = 100,
        clock: Clock = utcnow,
    ) -> None:
        self._dispatcher = dispatcher
        self._log = incident_log
        self._decay_window = timedelta(seconds=decay_window_seconds)
        self._idle_period = timedelta(seconds=idle_period_seconds)
        self._correlation_window = timedelta(seconds=correlation_window_seconds)
        self._eviction_after = timedelta(seconds=profile_eviction_seconds)
        self._blocked_reputation = blocked_reputation_threshold
        self._recovery_per_hour = reputation_recovery_per_hour
        self._penalties = dict(_DEFAULT_PENALTIES)
        self._penalties.update(reputation_penalties or {})
        self._clock = clock

        self._profiles: dict[str, AttackerProfile] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # insertion-ordered; sources evicted before the last
        # _RESTORE_SCAN_DEPTH records cannot be restored anyway
        self._evicted: dict[str, None] = {}
        self._incidents: deque[Incident] = deque(maxlen=recent_incident_limit)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        dispatcher: CountermeasureDispatcher,
        *,
        incident_log: IncidentLog | None = None,
        clock: Clock = utcnow,
    ) -> ThreatClassifier:
        return cls(
            dispatcher,
            incident_log=incident_log,
            decay_window_seconds=config.decay_window_seconds,
            idle_period_seconds=config.idle_period_seconds,
            correlation_window_seconds=config.correlation_window_seconds,
            profile_eviction_seconds=config.profile_eviction_seconds,
            blocked_reputation_threshold=config.blocked_reputation_threshold,
            reputation_recovery_per_hour=config.reputation_recovery_per_hour,
            reputation_penalties=config.reputation_penalties,
            recent_incident_limit=config.recent_incident_limit,
            clock=clock,
        )

    # -- classification -------------------------------------------------------

    async def classify(self, finding: Finding) -> Classification:
        """Fold *finding* into its source's profile and respond to transitions."""
        source_id = finding.source_id
        async with self._source_locked(source_id):
            now = self._clock()
            profile = self._profiles.get(source_id)
            if profile is None and source_id in self._evicted:
                profile = await self._restore_locked(source_id)
            if profile is None:
                profile = AttackerProfile(source_id=source_id, first_seen=now, last_seen=now)
                self._profiles[source_id] = profile

            self._recover_reputation(profile, now)
            profile.recent_findings.append(finding)
            profile.finding_kinds.add(finding.kind)
            profile.last_seen = now
            profile.decay_anchor = now
            penalty = self._penalties.get(finding.severity, 0.0)
            profile.reputation_score = max(0.0, profile.reputation_score - penalty)

            window = profile.findings_within(now, self._decay_window)
            profile.current_severity = max_severity(f.severity for f in window) or finding.severity

            previous = profile.state
            transitions = self._advance(profile, finding, window)

            correlated = profile.findings_within(now, self._correlation_window) or [finding]
            severity = max_severity(f.severity for f in correlated)
            outcomes: list[CountermeasureOutcome] = []
            if transitions and severity is not None:
                outcomes = await self._dispatcher.dispatch(
                    source_id,
                    severity,
                    profile,
                    escalate=profile.state is ThreatState.BLOCKED,
                )

            incident = Incident(
                source_id=source_id,
                findings=tuple(correlated),
                assigned_severity=severity,
                previous_state=previous,
                new_state=profile.state,
                countermeasures_dispatched=tuple(outcomes),
                created_at=now,
            )
            profile.incident_count += 1
            self._incidents.append(incident)
            self._write(incident, profile)

        if transitions:
            logger.info(
                "Source %s: %s -> %s (severity %s, reputation %.2f)",
                source_id, previous, profile.state, severity, profile.reputation_score,
            )
        return Classification(incident=incident, transitions=tuple(transitions))

    def _advance(
        self,
        profile: AttackerProfile,
        finding: Finding,
        window: list[Finding],
    ) -> list[tuple[ThreatState, ThreatState]]:
        start = profile.state
        transitions: list[tuple[ThreatState, ThreatState]] = []
        while True:
            state = profile.state
            if state is ThreatState.CLEAN:
                advance = finding.severity >= Severity.MEDIUM
            elif state is ThreatState.WATCHED:
                advance = (
                    finding.severity is Severity.CRITICAL
                    or (start is ThreatState.WATCHED and len(window) >= 2)
                )
            elif state is ThreatState.FLAGGED:
                severe = sum(1 for f in window if f.severity in _BLOCKING_SEVERITIES)
                advance = severe >= 3 or (
                    start is ThreatState.FLAGGED
                    and profile.reputation_score < self._blocked_reputation
                )
            else:
                advance = False
            if not advance:
                return transitions
            new_state = state.step_up()
            transitions.append((state, new_state))
            profile.state = new_state

    # -- time-driven maintenance ----------------------------------------------

    async def decay_all(self) -> list[tuple[str, ThreatState, ThreatState]]:
        """Step every quiet profile down one tier per full idle period."""
        changes: list[tuple[str, ThreatState, ThreatState]] = []
        for source_id in list(self._profiles):
            async with self._source_locked(source_id):
                profile = self._profiles.get(source_id)
                if profile is None:
                    continue
                now = self._clock()
                self._recover_reputation(profile, now)
                anchor = profile.decay_anchor or profile.last_seen
                periods = int((now - anchor) / self._idle_period)
                if periods < 1:
                    continue
                profile.decay_anchor = anchor + periods * self._idle_period
                previous = profile.state
                profile.state = previous.step_down(periods)
                severity = profile.current_severity
                for _ in range(periods):
                    if severity is None:
                        break
                    severity = severity.step_down()
                profile.current_severity = severity
                if profile.state is not previous:
                    changes.append((source_id, previous, profile.state))
                    logger.info("Source %s decayed: %s -> %s", source_id, previous, profile.state)
                    self._write_state(profile, f"Decayed {previous.value} -> {profile.state.value}")
        return changes

    async def prune_countermeasures(self) -> int:
        """Drop expired countermeasure entries from every profile."""
        pruned = 0
        for source_id in list(self._profiles):
            async with self._source_locked(source_id):
                profile = self._profiles.get(source_id)
                if profile is not None:
                    pruned += len(self._dispatcher.prune_expired(profile))
        return pruned

    async def evict_idle(self) -> list[str]:
        """Move long-idle profiles out of memory.

        Profiles with countermeasures still in force are kept.
        """
        evicted: list[str] = []
        for source_id in list(self._profiles):
            async with self._source_locked(source_id):
                profile = self._profiles.get(source_id)
                if profile is None or profile.active_countermeasures:
                    continue
                if self._clock() - profile.last_seen < self._eviction_after:
                    continue
                self._write_state(profile, "Profile evicted from hot set")
                del self._profiles[source_id]
                self._remember_evicted(source_id)
                evicted.append(source_id)
        if evicted:
            logger.debug("Evicted %d idle profiles", len(evicted))
        return evicted

    async def restore_profile(self, source_id: str) -> AttackerProfile | None:
        """Rebuild an evicted profile from the incident log."""
        async with self._source_locked(source_id):
            existing = self._profiles.get(source_id)
            if existing is not None:
                return existing
            return await self._restore_locked(source_id)

    async def release(self, source_id: str) -> bool:
        """Release *source_id*'s block after manual review."""
        async with self._source_locked(source_id):
            profile = self._profiles.get(source_id)
            if profile is None:
                return False
            return self._dispatcher.release(profile)

    # -- queries --------------------------------------------------------------

    def profile(self, source_id: str) -> AttackerProfile | None:
        return self._profiles.get(source_id)

    def profiles(self) -> list[AttackerProfile]:
        return list(self._profiles.values())

    def recent_incidents(self) -> list[Incident]:
        return list(self._incidents)

    # -- internals ------------------------------------------------------------

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks.setdefault(source_id, asyncio.Lock())
        return lock

    @asynccontextmanager
    async def _source_locked(self, source_id: str) -> AsyncIterator[None]:
        """Hold *source_id*'s lock; the lock lives only as long as its profile."""
        while True:
            lock = self._lock_for(source_id)
            await lock.acquire()
            # a waiter on a lock dropped while it queued retries on the new one
            if self._locks.get(source_id) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            if source_id not in self._profiles:
                del self._locks[source_id]
            lock.release()

    def _remember_evicted(self, source_id: str) -> None:
        self._evicted[source_id] = None
        while len(self._evicted) > _RESTORE_SCAN_DEPTH:
            del self._evicted[next(iter(self._evicted))]

    def _recover_reputation(self, profile: AttackerProfile, now: datetime) -> None:
        anchor = profile.reputation_anchor or profile.last_seen
        hours = max(0.0, (now - anchor).total_seconds() / 3600.0)
        if hours > 0:
            profile.reputation_score = min(
                1.0, profile.reputation_score + hours * self._recovery_per_hour,
            )
        profile.reputation_anchor = now

    async def _restore_locked(self, source_id: str) -> AttackerProfile | None:
        self._evicted.pop(source_id, None)
        if self._log is None:
            return None
        records = await self._log.recent(_RESTORE_SCAN_DEPTH)
        for record in reversed(records):
            snapshot = record.payload.get("profile")
            if record.source_id == source_id and snapshot:
                profile = AttackerProfile.from_snapshot(snapshot)
                self._profiles[source_id] = profile
                logger.info("Restored profile for %s from incident log", source_id)
                return profile
        return None

    def _write(self, incident: Incident, profile: AttackerProfile) -> None:
        if self._log is None:
            return
        self._log.submit(create_incident_record(
            record_type="incident",
            source_id=incident.source_id,
            severity=incident.assigned_severity,
            summary=(
                f"{incident.previous_state.value} -> {incident.new_state.value}"
                if incident.transitioned else f"classified ({incident.new_state.value})"
            ),
            payload={"incident": incident.to_dict(), "profile": profile.snapshot()},
            created_at=incident.created_at,
        ))

    def _write_state(self, profile: AttackerProfile, summary: str) -> None:
        if self._log is None:
            return
        self._log.submit(create_incident_record(
            record_type="incident",
            source_id=profile.source_id,
            severity=profile.current_severity,
            summary=summary,
            payload={"profile": profile.snapshot()},
            created_at=self._clock(),
        ))

