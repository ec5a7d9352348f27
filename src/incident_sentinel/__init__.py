"""Incident Sentinel -- security incident detection and response.

Scans request inputs for attack signatures, tracks per-endpoint traffic for
volumetric anomalies, classifies sources through an escalating threat state
machine and drives countermeasures through an external enforcer.

Packages
--------
* Detection (:mod:`incident_sentinel.detection`)
* Response (:mod:`incident_sentinel.response`)
* Audit (:mod:`incident_sentinel.audit`)
* Orchestration (:mod:`incident_sentinel.engine`)
"""
from __future__ import annotations

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------
from incident_sentinel.audit import (
    ChainVerificationResult,
    IncidentLog,
    IncidentRecord,
    create_incident_record,
    verify_chain,
)

# ---------------------------------------------------------------------------
# Core types, errors, config, interfaces
# ---------------------------------------------------------------------------
from incident_sentinel.core.config import EngineConfig
from incident_sentinel.core.errors import (
    ConfigurationError,
    DetectionError,
    EnforcementFailure,
    EnforcementTimeout,
    EnforcerUnavailable,
    InvalidSignature,
    LogUnavailable,
    MalformedSeverityTable,
    MissingSignatureLibrary,
    PersistenceError,
    ResponseError,
    ScanFailure,
    SentinelError,
    UnknownHoneypot,
)
from incident_sentinel.core.interfaces import (
    Enforcer,
    IncidentStore,
    InMemoryIncidentStore,
    NullInterceptor,
    RecordingEnforcer,
    RequestInterceptor,
)
from incident_sentinel.core.types import (
    CountermeasureKind,
    Finding,
    FindingKind,
    Severity,
    ThreatState,
)

# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------
from incident_sentinel.detection import (
    BehaviorAnalyzer,
    PatternScanner,
    RequestOutcome,
    ScanResult,
    SessionSignal,
    Signature,
    SignatureFamily,
    TrafficMonitor,
)

# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------
from incident_sentinel.engine import EngineStatus, SecurityEngine

# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------
from incident_sentinel.response import (
    AttackerIntelligence,
    AttackerProfile,
    CountermeasureDispatcher,
    HoneypotKind,
    HoneypotRegistry,
    Incident,
    ThreatClassifier,
)

__all__ = [
    "AttackerIntelligence",
    "AttackerProfile",
    "BehaviorAnalyzer",
    "ChainVerificationResult",
    "ConfigurationError",
    "CountermeasureDispatcher",
    "CountermeasureKind",
    "DetectionError",
    "EnforcementFailure",
    "EnforcementTimeout",
    "Enforcer",
    "EnforcerUnavailable",
    "EngineConfig",
    "EngineStatus",
    "Finding",
    "FindingKind",
    "HoneypotKind",
    "HoneypotRegistry",
    "InMemoryIncidentStore",
    "Incident",
    "IncidentLog",
    "IncidentRecord",
    "IncidentStore",
    "InvalidSignature",
    "LogUnavailable",
    "MalformedSeverityTable",
    "MissingSignatureLibrary",
    "NullInterceptor",
    "PatternScanner",
    "PersistenceError",
    "RecordingEnforcer",
    "RequestInterceptor",
    "RequestOutcome",
    "ResponseError",
    "ScanFailure",
    "ScanResult",
    "SecurityEngine",
    "SentinelError",
    "SessionSignal",
    "Severity",
    "Signature",
    "SignatureFamily",
    "ThreatClassifier",
    "ThreatState",
    "TrafficMonitor",
    "UnknownHoneypot",
    "__version__",
    "create_incident_record",
    "verify_chain",
]
