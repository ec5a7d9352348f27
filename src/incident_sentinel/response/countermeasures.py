"""Countermeasure variants and the severity -> countermeasure table.

The table is plain configuration (:attr:`EngineConfig.response_table`).  It
is validated once by :func:`build_response_table` and frozen into a
read-only mapping; an incomplete table is a fatal
:class:`~incident_sentinel.core.errors.MalformedSeverityTable`.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Any, ClassVar

from incident_sentinel.core.errors import MalformedSeverityTable
from incident_sentinel.core.types import CountermeasureKind, Severity
from incident_sentinel.response.decoys import HoneypotKind

# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LogOnly:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.LOG


@dataclass(frozen=True, slots=True)
class EnhancedMonitoring:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.ENHANCED_MONITORING

    duration: timedelta


@dataclass(frozen=True, slots=True)
class Throttle:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.THROTTLE

    delay_ms: int
    jitter_ms: int
    duration: timedelta


@dataclass(frozen=True, slots=True)
class Block:
    """Block a source; ``duration`` of ``None`` means until manual review."""

    kind: ClassVar[CountermeasureKind] = CountermeasureKind.BLOCK

    duration: timedelta | None

    @property
    def permanent(self) -> bool:
        return self.duration is None


@dataclass(frozen=True, slots=True)
class DeployHoneypot:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.DEPLOY_HONEYPOT

    honeypot_kind: HoneypotKind
    aggressive: bool = False
    honeypot_id: str | None = None


@dataclass(frozen=True, slots=True)
class InvalidateSession:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.INVALIDATE_SESSION


@dataclass(frozen=True, slots=True)
class Alert:
    kind: ClassVar[CountermeasureKind] = CountermeasureKind.ALERT

    payload: Mapping[str, Any] = field(default_factory=dict)
    cooldown: timedelta = timedelta(hours=1)


Countermeasure = (
    LogOnly | EnhancedMonitoring | Throttle | Block | DeployHoneypot | InvalidateSession | Alert
)


# ---------------------------------------------------------------------------
# Response table
# ---------------------------------------------------------------------------

ResponseTable = Mapping[Severity, tuple[CountermeasureKind, ...]]


def build_response_table(raw: Mapping[Any, Iterable[Any]]) -> ResponseTable:
    """Validate *raw* and return it as a read-only mapping.

    Every severity must map to a non-empty, duplicate-free list of known
    countermeasure kinds.

    Raises
    ------
    MalformedSeverityTable
        If any of those conditions fails.
    """
    table: dict[Severity, tuple[CountermeasureKind, ...]] = {}
    for key, kinds in raw.items():
        try:
            severity = Severity(key)
            parsed = tuple(CountermeasureKind(k) for k in kinds)
        except (ValueError, TypeError) as exc:
            raise MalformedSeverityTable(
                "Unknown severity or countermeasure kind",
                details={"entry": str(key)},
            ) from exc
        if not parsed:
            raise MalformedSeverityTable(
                "Severity maps to no countermeasures",
                details={"severity": severity.value},
            )
        if len(set(parsed)) != len(parsed):
            raise MalformedSeverityTable(
                "Duplicate countermeasure kind",
                details={"severity": severity.value},
            )
        table[severity] = parsed

    missing = [s.value for s in Severity if s not in table]
    if missing:
        raise MalformedSeverityTable(
            "Severity table is missing tiers",
            details={"missing": missing},
        )
    return MappingProxyType(table)
