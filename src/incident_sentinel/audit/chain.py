"""SHA-256 hash chain over incident records.

Each record carries the hash of the previous record, so any edit, deletion
or reordering of persisted records is detectable with :func:`verify_chain`.
"""
from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass

from incident_sentinel.audit.records import IncidentRecord, canonical_json

GENESIS_PREV_HASH = "sha256:" + "0" * 64
"""The ``previous_hash`` value for the first record in a chain."""

HASH_PREFIX = "sha256:"


def compute_hash(canonical_input: str) -> str:
    """Compute the prefixed SHA-256 hex digest of *canonical_input*."""
    digest = hashlib.sha256(canonical_input.encode("utf-8")).hexdigest()
    return f"{HASH_PREFIX}{digest}"


def chain_record(
    record: IncidentRecord,
    *,
    sequence: int,
    previous_hash: str,
) -> IncidentRecord:
    """Return a copy of *record* linked after *previous_hash*."""
    linked = record.model_copy(
        update={"sequence": sequence, "previous_hash": previous_hash},
    )
    record_hash = compute_hash(canonical_json(linked.hash_input()))
    return linked.model_copy(update={"record_hash": record_hash})


@dataclass(frozen=True, slots=True)
class ChainVerificationResult:
    """Outcome of :func:`verify_chain`."""

    valid: bool
    records_checked: int
    first_broken_sequence: int | None = None
    reason: str = ""


def verify_chain(records: Sequence[IncidentRecord]) -> ChainVerificationResult:
    """Verify that *records* form an unbroken hash chain.

    *records* may be a contiguous slice of a longer chain: the first
    record's ``previous_hash`` is trusted, every later link is checked.
    """
    previous: IncidentRecord | None = None
    for record in records:
        expected = compute_hash(canonical_json(record.hash_input()))
        if record.record_hash != expected:
            return ChainVerificationResult(
                valid=False,
                records_checked=record.sequence,
                first_broken_sequence=record.sequence,
                reason="record hash mismatch",
            )
        if previous is not None:
            if record.previous_hash != previous.record_hash:
                return ChainVerificationResult(
                    valid=False,
                    records_checked=record.sequence,
                    first_broken_sequence=record.sequence,
                    reason="previous hash does not link",
                )
            if record.sequence != previous.sequence + 1:
                return ChainVerificationResult(
                    valid=False,
                    records_checked=record.sequence,
                    first_broken_sequence=record.sequence,
                    reason="sequence gap",
                )
        previous = record
    return ChainVerificationResult(valid=True, records_checked=len(records))
