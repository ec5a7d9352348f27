"""Incident Sentinel audit trail.

* **IncidentRecord** -- the pydantic model written to the incident store.
* **chain_record** / **verify_chain** -- SHA-256 hash chaining that makes
  the append-only log tamper-evident.
* **IncidentLog** -- buffered, degradable front-end to the store.
"""
from __future__ import annotations

from incident_sentinel.audit.chain import (
    GENESIS_PREV_HASH,
    ChainVerificationResult,
    chain_record,
    compute_hash,
    verify_chain,
)
from incident_sentinel.audit.incident_log import IncidentLog
from incident_sentinel.audit.records import (
    IncidentRecord,
    canonical_json,
    create_incident_record,
    sanitize_evidence,
)

__all__ = [
    "GENESIS_PREV_HASH",
    "ChainVerificationResult",
    "IncidentLog",
    "IncidentRecord",
    "canonical_json",
    "chain_record",
    "compute_hash",
    "create_incident_record",
    "sanitize_evidence",
    "verify_chain",
]
