"""CountermeasureDispatcher: apply the response table to a source.

For a given severity the dispatcher applies every countermeasure in the
table row, in order.  Each kind is idempotent per source: an entry already
in ``profile.active_countermeasures`` is refreshed rather than duplicated.

Enforcer calls are bounded by ``asyncio.wait_for`` and retried at most
once.  A call that still fails is written to the incident log, its entry
is marked PENDING, and dispatch continues with the next countermeasure.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from incident_sentinel.audit.records import RecordType, create_incident_record
from incident_sentinel.core.errors import (
    EnforcementFailure,
    EnforcementTimeout,
    EnforcerUnavailable,
)
from incident_sentinel.core.types import (
    Clock,
    CountermeasureKind,
    FindingKind,
    Severity,
    utcnow,
)
from incident_sentinel.response.countermeasures import (
    Alert,
    Block,
    Countermeasure,
    DeployHoneypot,
    EnhancedMonitoring,
    InvalidateSession,
    LogOnly,
    ResponseTable,
    Throttle,
    build_response_table,
)
from incident_sentinel.response.decoys import HoneypotKind
from incident_sentinel.response.profile import (
    ActiveCountermeasure,
    AttackerProfile,
    CountermeasureStatus,
)

if TYPE_CHECKING:
    from incident_sentinel.audit.incident_log import IncidentLog
    from incident_sentinel.core.config import EngineConfig
    from incident_sentinel.core.interfaces import Enforcer, RequestInterceptor
    from incident_sentinel.response.honeypot import HoneypotRegistry

logger = logging.getLogger(__name__)

_DATABASE_KINDS = frozenset({FindingKind.SQL_INJECTION, FindingKind.NOSQL_INJECTION})
_RESOURCE_KINDS = frozenset({FindingKind.VOLUMETRIC_ANOMALY, FindingKind.RATE_LIMIT_EXCEEDED})


class OutcomeStatus(enum.StrEnum):
    APPLIED = "applied"
    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class CountermeasureOutcome:
    """What happened to one countermeasure during a dispatch."""

    kind: CountermeasureKind
    status: OutcomeStatus
    countermeasure: Countermeasure
    attempts: int = 0
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.PENDING


def honeypot_kind_for(profile: AttackerProfile) -> HoneypotKind:
    """Pick the decoy template that best matches what the source has tried."""
    if profile.finding_kinds & _DATABASE_KINDS:
        return HoneypotKind.DATABASE
    if profile.finding_kinds & _RESOURCE_KINDS:
        return HoneypotKind.RESOURCE
    return HoneypotKind.GENERIC


class CountermeasureDispatcher:
    """Executes countermeasures through an :class:`Enforcer`.

    Parameters
    ----------
    enforcer:
        External enforcement substrate.
    response_table:
        Raw severity -> kinds mapping; validated here.
    honeypots:
        Registry used for ``DEPLOY_HONEYPOT``.  Without one that kind is
        skipped.
    interceptor:
        Used for ``INVALIDATE_SESSION``.  Without one that kind is skipped.
    """

    def __init__(
        self,
        enforcer: Enforcer,
        *,
        response_table: ResponseTable | dict[Any, Any],
        honeypots: HoneypotRegistry | None = None,
        interceptor: RequestInterceptor | None = None,
        incident_log: IncidentLog | None = None,
        throttle_delay_ms: int = 2000,
        throttle_jitter_ms: int = 500,
        block_duration_seconds: float = 3600.0,
        monitoring_duration_seconds: float = 3600.0,
        alert_cooldown_seconds: float = 3600.0,
        timeout_seconds: float = 2.0,
        max_retries: int = 1,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._enforcer = enforcer
        self._table = build_response_table(response_table)
        self._honeypots = honeypots
        self._interceptor = interceptor
        self._log = incident_log
        self._delay_ms = throttle_delay_ms
        self._jitter_ms = throttle_jitter_ms
        self._block_duration = timedelta(seconds=block_duration_seconds)
        self._monitoring_duration = timedelta(seconds=monitoring_duration_seconds)
        self._alert_cooldown = timedelta(seconds=alert_cooldown_seconds)
        self._timeout = timeout_seconds
        self._max_retries = min(max_retries, 1)
        self._clock = clock
        self._rng = rng or random.Random()
        self._degraded = False

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        enforcer: Enforcer,
        *,
        honeypots: HoneypotRegistry | None = None,
        interceptor: RequestInterceptor | None = None,
        incident_log: IncidentLog | None = None,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> CountermeasureDispatcher:
        return cls(
            enforcer,
            response_table=config.response_table,
            honeypots=honeypots,
            interceptor=interceptor,
            incident_log=incident_log,
            throttle_delay_ms=config.throttle_delay_ms,
            throttle_jitter_ms=config.throttle_jitter_ms,
            block_duration_seconds=config.block_duration_seconds,
            monitoring_duration_seconds=config.monitoring_duration_seconds,
            alert_cooldown_seconds=config.alert_cooldown_seconds,
            timeout_seconds=config.enforcement_timeout_seconds,
            max_retries=config.enforcement_max_retries,
            clock=clock,
            rng=rng,
        )

    # -- public API -----------------------------------------------------------

    @property
    def response_table(self) -> ResponseTable:
        return self._table

    @property
    def enforcer_degraded(self) -> bool:
        """True if the most recent enforcer call failed."""
        return self._degraded

    def plan(
        self,
        severity: Severity,
        profile: AttackerProfile,
        *,
        escalate: bool = False,
    ) -> list[Countermeasure]:
        """Translate *severity* into concrete countermeasure variants."""
        kinds = list(self._table[severity])
        if escalate and CountermeasureKind.ALERT not in kinds:
            kinds.append(CountermeasureKind.ALERT)
        critical = severity is Severity.CRITICAL
        plan: list[Countermeasure] = []
        for kind in kinds:
            if kind is CountermeasureKind.LOG:
                plan.append(LogOnly())
            elif kind is CountermeasureKind.ENHANCED_MONITORING:
                plan.append(EnhancedMonitoring(duration=self._monitoring_duration))
            elif kind is CountermeasureKind.THROTTLE:
                plan.append(Throttle(
                    delay_ms=self._delay_ms,
                    jitter_ms=self._jitter_ms,
                    duration=self._monitoring_duration,
                ))
            elif kind is CountermeasureKind.BLOCK:
                plan.append(Block(duration=None if critical else self._block_duration))
            elif kind is CountermeasureKind.DEPLOY_HONEYPOT:
                plan.append(DeployHoneypot(
                    honeypot_kind=honeypot_kind_for(profile),
                    aggressive=critical,
                ))
            elif kind is CountermeasureKind.INVALIDATE_SESSION:
                plan.append(InvalidateSession())
            else:
                plan.append(Alert(
                    payload={
                        "source_id": profile.source_id,
                        "severity": severity.value,
                        "state": profile.state.value,
                        "reputation_score": round(profile.reputation_score, 3),
                        "finding_kinds": sorted(k.value for k in profile.finding_kinds),
                        "escalation": escalate,
                    },
                    cooldown=self._alert_cooldown,
                ))
        return plan

    async def dispatch(
        self,
        source_id: str,
        severity: Severity,
        profile: AttackerProfile,
        *,
        escalate: bool = False,
    ) -> list[CountermeasureOutcome]:
        """Apply every countermeasure for *severity* to *source_id*.

        Never raises on enforcer failure; failed countermeasures are
        reported as PENDING outcomes.
        """
        outcomes: list[CountermeasureOutcome] = []
        for cm in self.plan(severity, profile, escalate=escalate):
            outcome = await self._apply(source_id, cm, profile)
            outcomes.append(outcome)
        logger.debug(
            "Dispatched %s to %s: %s",
            severity, source_id, ", ".join(f"{o.kind}={o.status}" for o in outcomes),
        )
        return outcomes

    def prune_expired(self, profile: AttackerProfile) -> list[CountermeasureKind]:
        """Drop expired entries from *profile*; permanent entries never expire."""
        now = self._clock()
        expired = [
            kind for kind, entry in profile.active_countermeasures.items()
            if entry.is_expired(now)
        ]
        for kind in expired:
            del profile.active_countermeasures[kind]
        return expired

    def release(self, profile: AttackerProfile) -> bool:
        """Release a block after manual review.  Returns whether one was active."""
        entry = profile.active_countermeasures.pop(CountermeasureKind.BLOCK, None)
        if entry is None:
            return False
        logger.info("Released block on %s after manual review", profile.source_id)
        self._submit(
            profile.source_id,
            summary="Block released after manual review",
            payload={"countermeasure": entry.to_dict()},
            record_type="incident",
        )
        return True

    # -- per-kind application -------------------------------------------------

    async def _apply(
        self, source_id: str, cm: Countermeasure, profile: AttackerProfile,
    ) -> CountermeasureOutcome:
        if isinstance(cm, LogOnly):
            return CountermeasureOutcome(cm.kind, OutcomeStatus.APPLIED, cm)
        if isinstance(cm, EnhancedMonitoring):
            return self._track(profile, cm, expires_in=cm.duration)
        if isinstance(cm, Throttle):
            delay = cm.delay_ms + self._rng.randint(0, cm.jitter_ms)
            return await self._enforce(
                source_id, profile, cm,
                lambda: self._enforcer.throttle(source_id, delay),
                expires_in=cm.duration,
                detail={"delay_ms": delay},
            )
        if isinstance(cm, Block):
            current = profile.countermeasure(cm.kind)
            if current is not None and current.permanent and not cm.permanent:
                # A block awaiting manual review is never shortened
                if current.status is CountermeasureStatus.ACTIVE:
                    current.refresh_count += 1
                    return CountermeasureOutcome(cm.kind, OutcomeStatus.REFRESHED, cm)
                cm = Block(duration=None)
            block = cm
            return await self._enforce(
                source_id, profile, block,
                lambda: self._enforcer.block(source_id, block.duration),
                expires_in=block.duration,
                detail={"permanent": block.permanent},
            )
        if isinstance(cm, DeployHoneypot):
            if self._honeypots is None:
                return CountermeasureOutcome(cm.kind, OutcomeStatus.SKIPPED, cm)
            honeypot = self._honeypots.deploy(
                source_id, cm.honeypot_kind, aggressive=cm.aggressive,
            )
            deployed = DeployHoneypot(
                honeypot_kind=cm.honeypot_kind,
                aggressive=honeypot.aggressive,
                honeypot_id=honeypot.honeypot_id,
            )
            return self._track(
                profile, deployed,
                expires_at=honeypot.expires_at,
                detail={"honeypot_id": honeypot.honeypot_id, "kind": cm.honeypot_kind.value},
            )
        if isinstance(cm, InvalidateSession):
            if self._interceptor is None:
                return CountermeasureOutcome(cm.kind, OutcomeStatus.SKIPPED, cm)
            interceptor = self._interceptor
            error, attempts = await self._call(lambda: interceptor.invalidate_session(source_id))
            if error is not None:
                self._record_failure(source_id, cm.kind, error)
                return CountermeasureOutcome(
                    cm.kind, OutcomeStatus.PENDING, cm, attempts, error.to_dict()["error"],
                )
            return CountermeasureOutcome(cm.kind, OutcomeStatus.APPLIED, cm, attempts)

        # Alert
        current = profile.countermeasure(cm.kind)
        now = self._clock()
        if (
            current is not None
            and current.status is CountermeasureStatus.ACTIVE
            and not current.is_expired(now)
        ):
            return CountermeasureOutcome(cm.kind, OutcomeStatus.SKIPPED, cm)
        payload = dict(cm.payload)
        return await self._enforce(
            source_id, profile, cm,
            lambda: self._enforcer.alert(payload),
            expires_in=cm.cooldown,
        )

    # -- helpers --------------------------------------------------------------

    def _track(
        self,
        profile: AttackerProfile,
        cm: Countermeasure,
        *,
        expires_in: timedelta | None = None,
        expires_at: datetime | None = None,
        detail: dict[str, Any] | None = None,
        status: CountermeasureStatus = CountermeasureStatus.ACTIVE,
        error: dict[str, Any] | None = None,
        attempts: int = 0,
    ) -> CountermeasureOutcome:
        now = self._clock()
        if expires_at is None and expires_in is not None:
            expires_at = now + expires_in
        current = profile.active_countermeasures.get(cm.kind)
        if current is None:
            profile.active_countermeasures[cm.kind] = ActiveCountermeasure(
                kind=cm.kind,
                issued_at=now,
                expires_at=expires_at,
                status=status,
                detail=dict(detail or {}),
                last_error=error,
            )
            result = OutcomeStatus.APPLIED
        else:
            current.expires_at = expires_at
            current.status = status
            current.refresh_count += 1
            current.detail.update(detail or {})
            current.last_error = error
            result = OutcomeStatus.REFRESHED
        if status is CountermeasureStatus.PENDING:
            result = OutcomeStatus.PENDING
        return CountermeasureOutcome(cm.kind, result, cm, attempts, error)

    async def _enforce(
        self,
        source_id: str,
        profile: AttackerProfile,
        cm: Countermeasure,
        call: Callable[[], Awaitable[None]],
        *,
        expires_in: timedelta | None,
        detail: dict[str, Any] | None = None,
    ) -> CountermeasureOutcome:
        error, attempts = await self._call(call)
        if error is None:
            return self._track(profile, cm, expires_in=expires_in, detail=detail, attempts=attempts)
        self._record_failure(source_id, cm.kind, error)
        return self._track(
            profile, cm,
            expires_in=expires_in,
            detail=detail,
            status=CountermeasureStatus.PENDING,
            error=error.to_dict()["error"],
            attempts=attempts,
        )

    async def _call(
        self, call: Callable[[], Awaitable[None]],
    ) -> tuple[EnforcementFailure | None, int]:
        """Run *call* with a timeout and at most one retry."""
        error: EnforcementFailure | None = None
        attempts = 0
        for _ in range(1 + self._max_retries):
            attempts += 1
            try:
                await asyncio.wait_for(call(), timeout=self._timeout)
            except TimeoutError:
                error = EnforcementTimeout(details={"timeout_seconds": self._timeout})
            except Exception as exc:
                error = EnforcerUnavailable(details={"cause": type(exc).__name__})
            else:
                self._degraded = False
                return None, attempts
        self._degraded = True
        return error, attempts

    def _record_failure(
        self, source_id: str, kind: CountermeasureKind, error: EnforcementFailure,
    ) -> None:
        logger.warning(
            "Countermeasure %s for %s failed: %s (%s)", kind, source_id, error.message, error.code,
        )
        self._submit(
            source_id,
            summary=f"{kind.value} enforcement failed; marked pending",
            payload={"countermeasure": kind.value, **error.to_dict()},
            record_type="enforcement_failure",
        )

    def _submit(
        self, source_id: str, *, summary: str, payload: dict[str, Any], record_type: RecordType,
    ) -> None:
        if self._log is None:
            return
        self._log.submit(create_incident_record(
            record_type=record_type,
            source_id=source_id,
            summary=summary,
            payload=payload,
            created_at=self._clock(),
        ))
