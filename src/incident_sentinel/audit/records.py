"""IncidentRecord model, evidence sanitisation and canonical JSON.

Every record written to the incident log passes through this module.  Raw
attack payloads are never persisted as-is: :func:`sanitize_evidence` strips
control characters, HTML-escapes and truncates them so the log is safe to
render in a dashboard.
"""
from __future__ import annotations

import html
import json
import unicodedata
import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from incident_sentinel.core.types import Severity, utcnow

RecordType = Literal[
    "scan",
    "finding",
    "incident",
    "enforcement_failure",
    "honeypot",
]

_WHITESPACE_CONTROLS = str.maketrans({"\n": " ", "\r": " ", "\t": " "})
_ELLIPSIS = "..."


# ---------------------------------------------------------------------------
# Sanitisation
# ---------------------------------------------------------------------------

def sanitize_evidence(value: Any, max_length: int = 200) -> str:
    """Return a log-safe rendering of *value*.

    Newlines and tabs become spaces, every other control/format character
    is dropped, and the text is HTML-escaped.  The escaped result is at most
    *max_length* characters, ``...`` marker included, and is never cut
    inside an entity.
    """
    text = value if isinstance(value, str) else repr(value)
    text = text.translate(_WHITESPACE_CONTROLS)
    text = "".join(ch for ch in text if unicodedata.category(ch)[0] != "C")
    text = html.escape(text, quote=True)
    if len(text) <= max_length:
        return text
    cut = text[:max(0, max_length - len(_ELLIPSIS))]
    amp = cut.rfind("&")
    if amp != -1 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return cut + _ELLIPSIS


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------

def canonical_json(data: dict[str, Any]) -> str:
    """Return a deterministic JSON string suitable for hashing.

    Keys are sorted, separators carry no whitespace, and non-JSON values
    (datetimes, enums) are rendered with ``str``.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


# ---------------------------------------------------------------------------
# Record model
# ---------------------------------------------------------------------------

class IncidentRecord(BaseModel):
    """An append-only, hash-chained incident log entry.

    ``payload`` only ever contains sanitised evidence.
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: f"rec-{uuid.uuid4().hex}")
    record_type: RecordType
    source_id: str
    severity: Severity | None = None
    summary: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    previous_hash: str = ""
    record_hash: str = ""

    def hash_input(self) -> dict[str, Any]:
        """Return the fields covered by ``record_hash``."""
        return self.model_dump(mode="json", exclude={"record_hash"})


def create_incident_record(
    *,
    record_type: RecordType,
    source_id: str,
    severity: Severity | None = None,
    summary: str = "",
    payload: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> IncidentRecord:
    """Build an unchained :class:`IncidentRecord`.

    The incident log assigns ``sequence``, ``previous_hash`` and
    ``record_hash`` when the record is submitted.
    """
    return IncidentRecord(
        record_type=record_type,
        source_id=source_id,
        severity=severity,
        summary=summary,
        payload=payload or {},
        created_at=created_at or utcnow(),
    )
