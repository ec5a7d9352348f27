"""HoneypotRegistry: decoy deployment and attacker intelligence.

Honeypots are keyed by ``(source_id, kind)``; at most one is ACTIVE per key
and redeploying extends its TTL.  Interactions are accepted only while a
honeypot is ACTIVE.  Each interaction payload is matched against the
scanner's signature families to tag the attack technique; a signature hit
also produces a :class:`Finding` queued for the classifier.
"""
from __future__ import annotations

import enum
import logging
import random
import threading
import uuid
from collections import Counter, deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from incident_sentinel.audit.records import create_incident_record, sanitize_evidence
from incident_sentinel.core.errors import UnknownHoneypot
from incident_sentinel.core.types import Clock, Finding, utcnow
from incident_sentinel.detection.signatures import (
    DEFAULT_TECHNIQUE,
    FAMILY_KIND,
    FAMILY_SEVERITY,
    FAMILY_TECHNIQUE,
)
from incident_sentinel.response.decoys import HoneypotKind, build_decoys

if TYPE_CHECKING:
    from incident_sentinel.audit.incident_log import IncidentLog
    from incident_sentinel.detection.scanner import PatternScanner

logger = logging.getLogger(__name__)


class HoneypotStatus(enum.StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True, slots=True)
class Interaction:
    """A request that touched a decoy resource."""

    resource: str
    payload: Any = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class RecordedInteraction:
    """An :class:`Interaction` as stored: sanitised and technique-tagged."""

    resource: str
    excerpt: str
    timestamp: datetime
    technique: str
    families: tuple[str, ...] = ()


@dataclass(slots=True)
class Honeypot:
    """A decoy deployment for one source."""

    honeypot_id: str
    source_id: str
    kind: HoneypotKind
    decoy_resources: tuple[str, ...]
    decoy_data: dict[str, Any]
    deployed_at: datetime
    expires_at: datetime
    aggressive: bool = False
    status: HoneypotStatus = HoneypotStatus.ACTIVE
    interactions: list[RecordedInteraction] = field(default_factory=list)
    redeploy_count: int = 0
    deactivated_at: datetime | None = None

    def is_live(self, now: datetime) -> bool:
        return self.status is HoneypotStatus.ACTIVE and now < self.expires_at


@dataclass(frozen=True, slots=True)
class AttackerIntelligence:
    """Read-only summary of a source's honeypot engagement."""

    source_id: str
    honeypot_ids: tuple[str, ...]
    active_honeypots: int
    interaction_count: int
    techniques: dict[str, int]
    resources_touched: tuple[str, ...]
    first_interaction: datetime | None
    last_interaction: datetime | None
    engagement_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "honeypot_ids": list(self.honeypot_ids),
            "active_honeypots": self.active_honeypots,
            "interaction_count": self.interaction_count,
            "techniques": dict(self.techniques),
            "resources_touched": list(self.resources_touched),
            "first_interaction": self.first_interaction.isoformat() if self.first_interaction else None,
            "last_interaction": self.last_interaction.isoformat() if self.last_interaction else None,
            "engagement_seconds": self.engagement_seconds,
        }


class HoneypotRegistry:
    """Registry of deployed honeypots.

    Parameters
    ----------
    scanner:
        Used for side-effect-free signature matching of payloads.
    ttl_seconds:
        Lifetime of a deployment; redeploying restarts it.
    retention_seconds:
        How long an INACTIVE honeypot (and its interactions) stays
        queryable before it is purged.
    """

    def __init__(
        self,
        scanner: PatternScanner,
        *,
        ttl_seconds: float = 3600.0,
        retention_seconds: float = 86400.0,
        incident_log: IncidentLog | None = None,
        evidence_max_length: int = 200,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._scanner = scanner
        self._ttl = timedelta(seconds=ttl_seconds)
        self._retention = timedelta(seconds=retention_seconds)
        self._log = incident_log
        self._evidence_max = evidence_max_length
        self._clock = clock
        self._rng = rng or random.Random()
        self._by_id: dict[str, Honeypot] = {}
        self._by_source: dict[str, list[str]] = {}
        self._active: dict[tuple[str, HoneypotKind], str] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._pending: deque[Finding] = deque()

    # -- deployment -----------------------------------------------------------

    def deploy(
        self,
        source_id: str,
        kind: HoneypotKind,
        *,
        aggressive: bool = False,
    ) -> Honeypot:
        """Deploy (or refresh) the honeypot for ``(source_id, kind)``."""
        now = self._clock()
        with self._source_locked(source_id):
            existing_id = self._active.get((source_id, kind))
            existing = self._by_id.get(existing_id) if existing_id else None
            if existing is not None and existing.is_live(now):
                existing.expires_at = now + self._ttl
                existing.redeploy_count += 1
                if aggressive and not existing.aggressive:
                    resources, data = build_decoys(kind, aggressive=True, rng=self._rng)
                    existing.decoy_resources = resources
                    existing.decoy_data = data
                    existing.aggressive = True
                logger.debug("Extended honeypot %s for %s", existing.honeypot_id, source_id)
                return existing
            if existing is not None:
                self._deactivate_locked(existing, now)

            resources, data = build_decoys(kind, aggressive=aggressive, rng=self._rng)
            honeypot = Honeypot(
                honeypot_id=f"hp-{uuid.uuid4().hex[:12]}",
                source_id=source_id,
                kind=kind,
                decoy_resources=resources,
                decoy_data=data,
                deployed_at=now,
                expires_at=now + self._ttl,
                aggressive=aggressive,
            )
            self._by_id[honeypot.honeypot_id] = honeypot
            self._by_source.setdefault(source_id, []).append(honeypot.honeypot_id)
            self._active[(source_id, kind)] = honeypot.honeypot_id

        logger.info(
            "Deployed %s%s honeypot %s for %s",
            "aggressive " if aggressive else "", kind, honeypot.honeypot_id, source_id,
        )
        return honeypot

    def teardown(self, honeypot_id: str) -> Honeypot:
        """Deactivate *honeypot_id*.

        Raises
        ------
        UnknownHoneypot
            If no honeypot has that id.
        """
        honeypot = self.get(honeypot_id)
        with self._source_locked(honeypot.source_id):
            self._deactivate_locked(honeypot, self._clock())
        return honeypot

    def expire(self) -> list[str]:
        """Deactivate every honeypot whose TTL has passed.

        INACTIVE honeypots older than the retention period are purged in the
        same pass; a source left with none loses its lock as well.
        """
        now = self._clock()
        expired: list[str] = []
        purged = 0
        for honeypot in list(self._by_id.values()):
            with self._source_locked(honeypot.source_id):
                if honeypot.status is HoneypotStatus.ACTIVE and now >= honeypot.expires_at:
                    self._deactivate_locked(honeypot, now)
                    expired.append(honeypot.honeypot_id)
                elif self._purgeable(honeypot, now):
                    self._purge_locked(honeypot)
                    purged += 1
        if expired or purged:
            logger.debug("Expired %d honeypots, purged %d", len(expired), purged)
        return expired

    # -- interactions ---------------------------------------------------------

    def record_interaction(self, honeypot_id: str, interaction: Interaction) -> Finding | None:
        """Record *interaction* against an ACTIVE honeypot.

        Returns the finding produced by a signature hit (also queued for
        :meth:`drain_findings`), or ``None``.

        Raises
        ------
        UnknownHoneypot
            If no honeypot has that id.
        """
        honeypot = self.get(honeypot_id)
        families = self._scanner.match_families(interaction.payload)
        primary = max(families, key=lambda f: FAMILY_SEVERITY[f].rank) if families else None
        technique = FAMILY_TECHNIQUE[primary] if primary else DEFAULT_TECHNIQUE
        excerpt = sanitize_evidence(
            "" if interaction.payload is None else interaction.payload, self._evidence_max,
        )

        with self._source_locked(honeypot.source_id):
            if not honeypot.is_live(self._clock()):
                logger.debug("Ignoring interaction with inactive honeypot %s", honeypot_id)
                return None
            honeypot.interactions.append(RecordedInteraction(
                resource=interaction.resource,
                excerpt=excerpt,
                timestamp=interaction.timestamp,
                technique=technique,
                families=tuple(f.value for f in families),
            ))

        if self._log is not None:
            self._log.submit(create_incident_record(
                record_type="honeypot",
                source_id=honeypot.source_id,
                severity=FAMILY_SEVERITY[primary] if primary else None,
                summary=f"Honeypot {honeypot_id} touched: {technique}",
                payload={
                    "honeypot_id": honeypot_id,
                    "resource": sanitize_evidence(interaction.resource, self._evidence_max),
                    "technique": technique,
                    "excerpt": excerpt,
                },
                created_at=interaction.timestamp,
            ))

        if primary is None:
            return None
        finding = Finding(
            kind=FAMILY_KIND[primary],
            source_id=honeypot.source_id,
            severity=FAMILY_SEVERITY[primary],
            evidence={
                "honeypot_id": honeypot_id,
                "resource": sanitize_evidence(interaction.resource, self._evidence_max),
                "technique": technique,
                "families": [f.value for f in families],
                "excerpt": excerpt,
            },
            timestamp=interaction.timestamp,
            confidence=0.95,
        )
        self._pending.append(finding)
        logger.info(
            "Honeypot %s confirmed %s from %s", honeypot_id, technique, honeypot.source_id,
        )
        return finding

    def drain_findings(self) -> list[Finding]:
        """Remove and return every queued honeypot finding."""
        drained: list[Finding] = []
        while self._pending:
            drained.append(self._pending.popleft())
        return drained

    # -- queries --------------------------------------------------------------

    def get(self, honeypot_id: str) -> Honeypot:
        honeypot = self._by_id.get(honeypot_id)
        if honeypot is None:
            raise UnknownHoneypot(details={"honeypot_id": honeypot_id})
        return honeypot

    def honeypots_for(self, source_id: str) -> list[Honeypot]:
        ids = list(self._by_source.get(source_id, ()))
        return [self._by_id[i] for i in ids if i in self._by_id]

    def active_count(self) -> int:
        now = self._clock()
        return sum(1 for h in self._by_id.values() if h.is_live(now))

    def summarize(self, source_id: str) -> AttackerIntelligence:
        """Aggregate every honeypot deployed against *source_id*."""
        now = self._clock()
        honeypots = self.honeypots_for(source_id)
        interactions = [i for h in honeypots for i in h.interactions]
        stamps = sorted(i.timestamp for i in interactions)
        first = stamps[0] if stamps else None
        last = stamps[-1] if stamps else None
        resources: list[str] = []
        for i in interactions:
            if i.resource not in resources:
                resources.append(i.resource)
        return AttackerIntelligence(
            source_id=source_id,
            honeypot_ids=tuple(h.honeypot_id for h in honeypots),
            active_honeypots=sum(1 for h in honeypots if h.is_live(now)),
            interaction_count=len(interactions),
            techniques=dict(Counter(i.technique for i in interactions)),
            resources_touched=tuple(resources),
            first_interaction=first,
            last_interaction=last,
            engagement_seconds=(last - first).total_seconds() if first and last else 0.0,
        )

    # -- internals ------------------------------------------------------------

    def _lock_for(self, source_id: str) -> threading.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = self._locks.setdefault(source_id, threading.Lock())
        return lock

    @contextmanager
    def _source_locked(self, source_id: str) -> Iterator[None]:
        while True:
            lock = self._lock_for(source_id)
            lock.acquire()
            # the lock may have been dropped by a purge while we waited
            if self._locks.get(source_id) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            if source_id not in self._by_source:
                self._locks.pop(source_id, None)
            lock.release()

    def _purgeable(self, honeypot: Honeypot, now: datetime) -> bool:
        return (
            honeypot.status is HoneypotStatus.INACTIVE
            and honeypot.deactivated_at is not None
            and now - honeypot.deactivated_at >= self._retention
        )

    def _purge_locked(self, honeypot: Honeypot) -> None:
        self._by_id.pop(honeypot.honeypot_id, None)
        ids = self._by_source.get(honeypot.source_id, [])
        if honeypot.honeypot_id in ids:
            ids.remove(honeypot.honeypot_id)
        if not ids:
            self._by_source.pop(honeypot.source_id, None)
        logger.debug("Purged honeypot %s", honeypot.honeypot_id)

    def _deactivate_locked(self, honeypot: Honeypot, now: datetime) -> None:
        if honeypot.status is HoneypotStatus.INACTIVE:
            return
        honeypot.status = HoneypotStatus.INACTIVE
        honeypot.deactivated_at = now
        key = (honeypot.source_id, honeypot.kind)
        if self._active.get(key) == honeypot.honeypot_id:
            del self._active[key]
        logger.debug("Deactivated honeypot %s", honeypot.honeypot_id)
