"""Per-source attacker state.

:class:`AttackerProfile` is owned by the classifier and mutated only while
the classifier holds that source's lock.  The dispatcher records the
countermeasures it applied in ``active_countermeasures``, keyed by kind so
that re-issuing a countermeasure refreshes the existing entry.
"""
from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from incident_sentinel.core.types import (
    CountermeasureKind,
    Finding,
    FindingKind,
    Severity,
    ThreatState,
)

RECENT_FINDINGS_LIMIT = 100


class CountermeasureStatus(enum.StrEnum):
    """Whether the enforcer confirmed the countermeasure."""

    ACTIVE = "active"
    PENDING = "pending"


@dataclass(slots=True)
class ActiveCountermeasure:
    """A countermeasure currently in force (or awaiting enforcement).

    ``expires_at`` of ``None`` means the countermeasure lasts until manual
    review.
    """

    kind: CountermeasureKind
    issued_at: datetime
    expires_at: datetime | None
    status: CountermeasureStatus = CountermeasureStatus.ACTIVE
    refresh_count: int = 0
    detail: dict[str, Any] = field(default_factory=dict)
    last_error: dict[str, Any] | None = None

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_count": self.refresh_count,
            "detail": dict(self.detail),
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class AttackerProfile:
    """Running escalation state for one source.

    Attributes
    ----------
    source_id:
        Network address, session id or ``endpoint:<path>`` pseudo-source.
    current_severity:
        Max severity of recent findings; decays one tier per idle period.
    reputation_score:
        1.0 is fully trusted; decreases with each finding and recovers
        linearly while the source is quiet.
    decay_anchor:
        Start of the current idle period.
    """

    source_id: str
    first_seen: datetime
    last_seen: datetime
    state: ThreatState = ThreatState.CLEAN
    current_severity: Severity | None = None
    reputation_score: float = 1.0
    finding_kinds: set[FindingKind] = field(default_factory=set)
    active_countermeasures: dict[CountermeasureKind, ActiveCountermeasure] = field(
        default_factory=dict,
    )
    recent_findings: deque[Finding] = field(
        default_factory=lambda: deque(maxlen=RECENT_FINDINGS_LIMIT),
    )
    decay_anchor: datetime | None = None
    reputation_anchor: datetime | None = None
    incident_count: int = 0

    def findings_within(self, now: datetime, window: timedelta) -> list[Finding]:
        """Return recent findings with ``timestamp > now - window``."""
        cutoff = now - window
        return [f for f in self.recent_findings if f.timestamp > cutoff]

    def countermeasure(self, kind: CountermeasureKind) -> ActiveCountermeasure | None:
        return self.active_countermeasures.get(kind)

    def snapshot(self) -> dict[str, Any]:
        """Serialisable state used for incident records and restoration."""
        return {
            "source_id": self.source_id,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "state": self.state.value,
            "current_severity": self.current_severity.value if self.current_severity else None,
            "reputation_score": round(self.reputation_score, 6),
            "finding_kinds": sorted(k.value for k in self.finding_kinds),
            "incident_count": self.incident_count,
            "active_countermeasures": {
                kind.value: entry.to_dict()
                for kind, entry in self.active_countermeasures.items()
            },
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> AttackerProfile:
        """Rebuild a profile from :meth:`snapshot` output.

        Active countermeasures and recent findings are not restored; the
        enforcer owns the former and the latter have aged out of the
        correlation windows by the time a profile is evicted.
        """
        last_seen = datetime.fromisoformat(data["last_seen"])
        severity = data.get("current_severity")
        return cls(
            source_id=data["source_id"],
            first_seen=datetime.fromisoformat(data["first_seen"]),
            last_seen=last_seen,
            state=ThreatState(data["state"]),
            current_severity=Severity(severity) if severity else None,
            reputation_score=float(data["reputation_score"]),
            finding_kinds={FindingKind(k) for k in data.get("finding_kinds", ())},
            decay_anchor=last_seen,
            reputation_anchor=last_seen,
            incident_count=int(data.get("incident_count", 0)),
        )
