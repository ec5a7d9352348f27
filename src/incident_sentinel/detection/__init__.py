"""Incident Sentinel detectors.

* **PatternScanner** -- signature and heuristic scanning of request inputs.
* **TrafficMonitor** -- sliding-window volumetric anomaly detection with an
  EWMA baseline per endpoint.
* **BehaviorAnalyzer** -- per-session timing and navigation heuristics,
  plus headless-client fingerprinting.

All three only produce :class:`~incident_sentinel.core.types.Finding`
objects; escalation is the job of :mod:`incident_sentinel.response`.
"""
from __future__ import annotations

from incident_sentinel.detection.behavioral import BehaviorAnalyzer, SessionSignal
from incident_sentinel.detection.pattern_engine import PatternEngine
from incident_sentinel.detection.scanner import PatternScanner, ScanResult
from incident_sentinel.detection.signatures import (
    FAMILY_SEVERITY,
    FAMILY_TECHNIQUE,
    Signature,
    SignatureFamily,
    build_standard_signatures,
)
from incident_sentinel.detection.traffic import (
    AnomalyVerdict,
    RequestOutcome,
    TrafficBaseline,
    TrafficMonitor,
    TrafficSnapshot,
)

__all__ = [
    "FAMILY_SEVERITY",
    "FAMILY_TECHNIQUE",
    "AnomalyVerdict",
    "BehaviorAnalyzer",
    "PatternEngine",
    "PatternScanner",
    "RequestOutcome",
    "ScanResult",
    "SessionSignal",
    "Signature",
    "SignatureFamily",
    "TrafficBaseline",
    "TrafficMonitor",
    "TrafficSnapshot",
    "build_standard_signatures",
]
