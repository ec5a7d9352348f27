"""Incident Sentinel shared domain types.

This module defines the value types and enums shared by every detector and
by the response pipeline.

Key design decisions:
* ``Finding`` is a frozen dataclass; its evidence is exposed through a
  read-only mapping so a finding cannot be altered once emitted.
* ``Severity`` and ``ThreatState`` are *ordered* string enums so they
  serialise cleanly to JSON and still compare with ``<`` / ``max()``.
* Timestamps are always timezone-aware UTC datetimes.
"""
from __future__ import annotations

import enum
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

Clock = Callable[[], datetime]
"""A zero-argument callable returning the current UTC datetime."""


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone information."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(enum.StrEnum):
    """Severity tiers for findings and incidents.

    Ordered ``LOW < MEDIUM < HIGH < CRITICAL``.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Return the integer rank (0-3)."""
        return _SEVERITY_ORDER.index(self)

    def step_down(self) -> Severity | None:
        """Return the next lower tier, or ``None`` below LOW."""
        if self.rank == 0:
            return None
        return _SEVERITY_ORDER[self.rank - 1]

    def __ge__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, Severity):
            return self.rank < other.rank
        return NotImplemented


_SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
)


def max_severity(severities: Iterable[Severity]) -> Severity | None:
    """Return the highest severity in *severities*, or ``None`` if empty."""
    return max(severities, key=lambda s: s.rank, default=None)


class FindingKind(enum.StrEnum):
    """What a detector observed."""

    SQL_INJECTION = "sql_injection"
    NOSQL_INJECTION = "nosql_injection"
    COMMAND_INJECTION = "command_injection"
    SCRIPT_INJECTION = "script_injection"
    OBFUSCATION = "obfuscation"
    SUSPICIOUS_LENGTH = "suspicious_length"
    UNUSUAL_SEQUENCE = "unusual_sequence"
    ENCODING_ATTEMPT = "encoding_attempt"
    UNSCANNABLE_INPUT = "unscannable_input"
    VOLUMETRIC_ANOMALY = "volumetric_anomaly"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"
    HEADLESS_CLIENT = "headless_client"


class ThreatState(enum.StrEnum):
    """Per-source escalation state.

    Transitions: CLEAN -> WATCHED -> FLAGGED -> BLOCKED, with time decay
    stepping back down one tier per idle period.
    """

    CLEAN = "clean"
    WATCHED = "watched"
    FLAGGED = "flagged"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        """Return the integer rank (0-3)."""
        return _STATE_ORDER.index(self)

    def step_up(self) -> ThreatState:
        """Return the next higher state, topping out at BLOCKED."""
        return _STATE_ORDER[min(self.rank + 1, len(_STATE_ORDER) - 1)]

    def step_down(self, tiers: int = 1) -> ThreatState:
        """Return the state *tiers* levels lower, bottoming out at CLEAN."""
        return _STATE_ORDER[max(0, self.rank - tiers)]


_STATE_ORDER: tuple[ThreatState, ...] = (
    ThreatState.CLEAN,
    ThreatState.WATCHED,
    ThreatState.FLAGGED,
    ThreatState.BLOCKED,
)


class CountermeasureKind(enum.StrEnum):
    """Kinds of countermeasure the dispatcher can apply to a source."""

    LOG = "log"
    ENHANCED_MONITORING = "enhanced_monitoring"
    THROTTLE = "throttle"
    BLOCK = "block"
    DEPLOY_HONEYPOT = "deploy_honeypot"
    INVALIDATE_SESSION = "invalidate_session"
    ALERT = "alert"


# ---------------------------------------------------------------------------
# Finding
# ---------------------------------------------------------------------------

def _new_finding_id() -> str:
    return f"fnd-{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True, slots=True)
class Finding:
    """A single detected signal of possible malicious activity.

    Attributes
    ----------
    kind : FindingKind
        What was detected.
    source_id : str
        Network address, session id, or ``endpoint:<path>`` pseudo-source.
    severity : Severity
        Severity tier assigned by the detector.
    evidence : Mapping[str, Any]
        Matched signature id or metric snapshot (already sanitised).
    timestamp : datetime
        UTC time the finding was produced.
    confidence : float
        Detector confidence in the range 0.0 -- 1.0.
    finding_id : str
        Unique identifier.
    """

    kind: FindingKind
    source_id: str
    severity: Severity
    evidence: Mapping[str, Any] = field(default_factory=dict, compare=False)
    timestamp: datetime = field(default_factory=utcnow)
    confidence: float = 1.0
    finding_id: str = field(default_factory=_new_finding_id)

    def __post_init__(self) -> None:
        if not (0.0 <= self.confidence <= 1.0):
            msg = f"confidence must be in [0, 1], got {self.confidence}"
            raise ValueError(msg)
        object.__setattr__(self, "evidence", MappingProxyType(dict(self.evidence)))

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation."""
        return {
            "finding_id": self.finding_id,
            "kind": self.kind.value,
            "source_id": self.source_id,
            "severity": self.severity.value,
            "evidence": dict(self.evidence),
            "timestamp": self.timestamp.isoformat(),
            "confidence": self.confidence,
        }
