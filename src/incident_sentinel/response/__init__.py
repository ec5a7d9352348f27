"""Incident Sentinel response pipeline.

* **ThreatClassifier** -- per-source CLEAN/WATCHED/FLAGGED/BLOCKED state
  machine with reputation tracking and time decay.
* **CountermeasureDispatcher** -- applies the severity response table
  through an external enforcer, with timeouts and a single retry.
* **HoneypotRegistry** -- decoy deployment and attacker intelligence.
"""
from __future__ import annotations

from incident_sentinel.response.classifier import Classification, Incident, ThreatClassifier
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
from incident_sentinel.response.decoys import HoneypotKind, build_decoys
from incident_sentinel.response.dispatcher import (
    CountermeasureDispatcher,
    CountermeasureOutcome,
    OutcomeStatus,
    honeypot_kind_for,
)
from incident_sentinel.response.honeypot import (
    AttackerIntelligence,
    Honeypot,
    HoneypotRegistry,
    HoneypotStatus,
    Interaction,
    RecordedInteraction,
)
from incident_sentinel.response.profile import (
    ActiveCountermeasure,
    AttackerProfile,
    CountermeasureStatus,
)

__all__ = [
    "ActiveCountermeasure",
    "Alert",
    "AttackerIntelligence",
    "AttackerProfile",
    "Block",
    "Classification",
    "Countermeasure",
    "CountermeasureDispatcher",
    "CountermeasureOutcome",
    "CountermeasureStatus",
    "DeployHoneypot",
    "EnhancedMonitoring",
    "Honeypot",
    "HoneypotKind",
    "HoneypotRegistry",
    "HoneypotStatus",
    "Incident",
    "Interaction",
    "InvalidateSession",
    "LogOnly",
    "OutcomeStatus",
    "ResponseTable",
    "ThreatClassifier",
    "Throttle",
    "build_decoys",
    "build_response_table",
    "honeypot_kind_for",
]
