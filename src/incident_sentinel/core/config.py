"""Incident Sentinel engine configuration.

Defines the validated, immutable configuration model consumed by every
detector and by the response pipeline.  All fields carry defaults so that
``EngineConfig()`` is sufficient for development; production deployments
typically load a JSON document with :meth:`EngineConfig.from_file`.
"""
from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from incident_sentinel.core.types import CountermeasureKind, Severity


def _default_response_table() -> dict[Severity, list[CountermeasureKind]]:
    return {
        Severity.LOW: [CountermeasureKind.LOG],
        Severity.MEDIUM: [
            CountermeasureKind.ENHANCED_MONITORING,
            CountermeasureKind.THROTTLE,
        ],
        Severity.HIGH: [
            CountermeasureKind.BLOCK,
            CountermeasureKind.DEPLOY_HONEYPOT,
            CountermeasureKind.INVALIDATE_SESSION,
        ],
        Severity.CRITICAL: [
            CountermeasureKind.BLOCK,
            CountermeasureKind.ALERT,
            CountermeasureKind.DEPLOY_HONEYPOT,
        ],
    }


def _default_whitelist() -> list[str]:
    return [
        "union station",
        "select committee",
        "drop box",
        "insert coin",
        "alter ego",
        "delete key",
        "update available",
    ]


def _default_context_limits() -> dict[str, int]:
    return {
        "username": 50,
        "email": 254,
        "password": 128,
        "search": 512,
    }


class EngineConfig(BaseModel):
    """Configuration for a :class:`~incident_sentinel.engine.SecurityEngine`.

    The model is frozen: configuration is loaded once at start-up and
    treated as immutable for the lifetime of the engine.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # -- PatternScanner ----------------------------------------------------
    whitelist: list[str] = Field(
        default_factory=_default_whitelist,
        description="Known-benign phrases; a case-insensitive substring hit marks input safe.",
    )
    context_length_limits: dict[str, int] = Field(
        default_factory=_default_context_limits,
        description="Maximum expected input length per scan context.",
    )
    evidence_max_length: int = Field(
        default=200,
        ge=16,
        description="Sanitised evidence is truncated to this many characters.",
    )

    # -- TrafficMonitor ----------------------------------------------------
    window_seconds: float = Field(default=60.0, gt=0)
    tick_seconds: float = Field(default=5.0, gt=0)
    baseline_requests_per_window: float = Field(default=100.0, gt=0)
    baseline_unique_sources_per_window: float = Field(default=50.0, gt=0)
    baseline_avg_response_time_ms: float = Field(default=200.0, gt=0)
    baseline_error_rate: float = Field(default=0.02, gt=0, le=1)
    baseline_smoothing_alpha: float = Field(default=0.1, gt=0, le=1)
    volume_ratio_threshold: float = Field(default=5.0, gt=0)
    unique_source_ratio_threshold: float = Field(default=5.0, gt=0)
    error_rate_threshold: float = Field(default=0.30, gt=0, le=1)
    latency_ratio_threshold: float = Field(default=3.0, gt=0)
    per_source_request_limit: int = Field(
        default=60,
        ge=1,
        description="Requests per window above which a single source is rate-limited.",
    )
    heavy_hitter_threshold: int = Field(
        default=100,
        ge=1,
        description="Requests per window that attribute a volumetric anomaly to a source.",
    )

    # -- BehaviorAnalyzer --------------------------------------------------
    behavior_signal_window: int = Field(default=50, ge=2)
    behavior_min_signals: int = Field(default=5, ge=3)
    behavior_confidence_threshold: float = Field(default=0.8, gt=0, le=1)
    session_idle_seconds: float = Field(default=1800.0, gt=0)

    # -- ThreatClassifier --------------------------------------------------
    decay_window_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Window in which repeated findings escalate a source.",
    )
    idle_period_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Quiet time after which state and severity decay one tier.",
    )
    correlation_window_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Findings inside this window are correlated into one incident.",
    )
    profile_eviction_seconds: float = Field(default=86400.0, gt=0)
    blocked_reputation_threshold: float = Field(default=0.3, ge=0, le=1)
    reputation_recovery_per_hour: float = Field(default=0.05, ge=0, le=1)
    reputation_penalties: dict[Severity, float] = Field(
        default_factory=lambda: {
            Severity.LOW: 0.05,
            Severity.MEDIUM: 0.1,
            Severity.HIGH: 0.2,
            Severity.CRITICAL: 0.4,
        },
    )

    # -- CountermeasureDispatcher -----------------------------------------
    response_table: dict[Severity, list[CountermeasureKind]] = Field(
        default_factory=_default_response_table,
        description="Severity -> ordered countermeasure kinds (all applied).",
    )
    throttle_delay_ms: int = Field(default=2000, ge=0)
    throttle_jitter_ms: int = Field(default=500, ge=0)
    block_duration_seconds: float = Field(default=3600.0, gt=0)
    monitoring_duration_seconds: float = Field(default=3600.0, gt=0)
    alert_cooldown_seconds: float = Field(default=3600.0, gt=0)
    enforcement_timeout_seconds: float = Field(default=2.0, gt=0)
    enforcement_max_retries: int = Field(default=1, ge=0, le=1)

    # -- HoneypotRegistry --------------------------------------------------
    honeypot_ttl_seconds: float = Field(default=3600.0, gt=0)
    honeypot_retention_seconds: float = Field(default=86400.0, gt=0)

    # -- IncidentLog -------------------------------------------------------
    log_buffer_limit: int = Field(default=1000, ge=1)
    recent_incident_limit: int = Field(default=100, ge=1)

    @classmethod
    def from_file(cls, path: str | Path) -> EngineConfig:
        """Load and validate a JSON configuration document."""
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
