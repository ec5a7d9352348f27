"""PatternScanner: signature and heuristic scanning of request inputs.

Scanning order:

1. Whitelist (case-insensitive substring).  A hit short-circuits with
   ``safe=True`` even if the input also contains signature matches.
2. Signature library, family by family.  One :class:`Finding` per matching
   signature, severity taken from the family table.
3. Heuristics: special-character runs, consecutive encoding escapes and
   per-context length limits.  Heuristic findings never exceed HIGH.

The scanner sits on the request path and therefore never raises.  Input
that cannot be turned into text fails open with a single LOW
``UNSCANNABLE_INPUT`` finding.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from incident_sentinel.audit.records import create_incident_record, sanitize_evidence
from incident_sentinel.core.errors import MissingSignatureLibrary, ScanFailure
from incident_sentinel.core.types import (
    Clock,
    Finding,
    FindingKind,
    Severity,
    max_severity,
    utcnow,
)
from incident_sentinel.detection.pattern_engine import PatternEngine
from incident_sentinel.detection.signatures import (
    FAMILY_ORDER,
    Signature,
    SignatureFamily,
    build_standard_signatures,
)

if TYPE_CHECKING:
    from incident_sentinel.audit.incident_log import IncidentLog
    from incident_sentinel.core.config import EngineConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Heuristic patterns
# ---------------------------------------------------------------------------

_UNUSUAL_SEQUENCES: tuple[re.Pattern[str], ...] = (
    re.compile(r"'{3,}"),
    re.compile(r";{3,}"),
    re.compile(r"--\s*--"),
    re.compile(r"[^\w\s]{8,}"),
)

_ENCODING_ESCAPES: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:%[0-9a-f]{2}){3,}", re.IGNORECASE),
    re.compile(r"(?:\\x[0-9a-f]{2}){3,}", re.IGNORECASE),
    re.compile(r"(?:\\u[0-9a-f]{4}){3,}", re.IGNORECASE),
    re.compile(r"(?:&#x?[0-9a-f]+;){3,}", re.IGNORECASE),
)

_HEURISTIC_CAP = Severity.HIGH


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of :meth:`PatternScanner.scan`.

    Attributes
    ----------
    safe:
        ``True`` when no finding was produced, when the input was
        whitelisted, or when the scanner failed open.
    findings:
        Findings in detection order.
    whitelisted:
        ``True`` when a whitelist phrase short-circuited the scan.
    input_length:
        Length of the scanned text.
    context:
        Input context supplied by the caller (``"username"``, ``"search"`` ...).
    """

    safe: bool
    findings: tuple[Finding, ...] = ()
    whitelisted: bool = False
    input_length: int = 0
    context: str = "unknown"
    scanned_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def severity(self) -> Severity | None:
        """Highest severity among the findings, if any."""
        return max_severity(f.severity for f in self.findings)


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class PatternScanner:
    """Signature and heuristic scanner for request inputs.

    Parameters
    ----------
    signatures:
        Signature library.  Defaults to :func:`build_standard_signatures`.
        An empty library is a configuration error.
    whitelist:
        Known-benign phrases.
    context_length_limits:
        Maximum expected length per input context.
    evidence_max_length:
        Cap applied to sanitised evidence excerpts.
    incident_log:
        Receives one record per non-safe scan.  Optional.
    """

    def __init__(
        self,
        signatures: Iterable[Signature] | None = None,
        *,
        whitelist: Iterable[str] = (),
        context_length_limits: Mapping[str, int] | None = None,
        evidence_max_length: int = 200,
        incident_log: IncidentLog | None = None,
        pattern_engine: PatternEngine | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = pattern_engine or PatternEngine()
        library = build_standard_signatures() if signatures is None else list(signatures)
        if not library:
            raise MissingSignatureLibrary(
                "PatternScanner requires at least one signature",
            )
        # Validate every pattern at load time
        for sig in library:
            self._engine.compile(sig.pattern)
        self._signatures = self._sorted(library)
        self._whitelist = tuple(phrase.lower() for phrase in whitelist if phrase)
        self._limits = dict(context_length_limits or {})
        self._evidence_max = evidence_max_length
        self._log = incident_log
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        incident_log: IncidentLog | None = None,
        clock: Clock = utcnow,
    ) -> PatternScanner:
        """Build a scanner with the standard library and *config* thresholds."""
        return cls(
            whitelist=config.whitelist,
            context_length_limits=config.context_length_limits,
            evidence_max_length=config.evidence_max_length,
            incident_log=incident_log,
            clock=clock,
        )

    # -- public API ---------------------------------------------------------

    def scan(
        self,
        value: Any,
        context: str = "unknown",
        *,
        source_id: str = "anonymous",
    ) -> ScanResult:
        """Scan *value* and return a :class:`ScanResult`.  Never raises."""
        try:
            text = self._stringify(value)
        except ScanFailure as exc:
            return self._fail_open(source_id, context, exc)

        try:
            result = self._scan_text(text, context, source_id)
        except Exception as exc:
            logger.warning(
                "Scanner error on %s input from %s; failing open",
                context, source_id, exc_info=True,
            )
            return self._fail_open(
                source_id, context,
                ScanFailure("Scanner raised", details={"cause": type(exc).__name__}),
            )

        if not result.safe:
            self._record(result, text, source_id)
        return result

    def match_families(self, value: Any) -> list[SignatureFamily]:
        """Return the signature families matched by *value*, in family order.

        Performs no whitelist check, no heuristics and no logging.
        """
        try:
            text = self._stringify(value)
        except ScanFailure:
            return []
        families: list[SignatureFamily] = []
        for sig in self._signatures:
            if sig.family not in families and self._engine.match(sig.pattern, text):
                families.append(sig.family)
        return families

    def add_signature(self, signature: Signature) -> None:
        """Add a custom signature.

        Raises
        ------
        InvalidSignature
            If the pattern does not compile.
        ValueError
            If a signature with the same id already exists.
        """
        if any(s.signature_id == signature.signature_id for s in self._signatures):
            msg = f"Signature ID already exists: {signature.signature_id}"
            raise ValueError(msg)
        self._engine.compile(signature.pattern)
        self._signatures = self._sorted([*self._signatures, signature])

    @property
    def signatures(self) -> list[Signature]:
        """Return a copy of the signature library in evaluation order."""
        return list(self._signatures)

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _sorted(signatures: list[Signature]) -> list[Signature]:
        return sorted(signatures, key=lambda s: FAMILY_ORDER.index(s.family))

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8", errors="replace")
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError, RecursionError) as exc:
            raise ScanFailure(
                "Structured input could not be serialised",
                details={"cause": type(exc).__name__},
            ) from exc

    def _scan_text(self, text: str, context: str, source_id: str) -> ScanResult:
        if not text:
            return ScanResult(safe=True, context=context)

        lowered = text.lower()
        if any(phrase in lowered for phrase in self._whitelist):
            logger.debug("Whitelisted %s input from %s", context, source_id)
            return ScanResult(
                safe=True, whitelisted=True, input_length=len(text), context=context,
            )

        now = self._clock()
        findings: list[Finding] = []
        for sig in self._signatures:
            match = self._engine.search(sig.pattern, text)
            if match is None:
                continue
            findings.append(Finding(
                kind=sig.kind,
                source_id=source_id,
                severity=sig.severity,
                evidence={
                    "signature_id": sig.signature_id,
                    "family": sig.family.value,
                    "context": context,
                    "excerpt": sanitize_evidence(match.group(0), self._evidence_max),
                },
                timestamp=now,
            ))

        findings.extend(self._heuristics(text, context, source_id, now))
        return ScanResult(
            safe=not findings,
            findings=tuple(findings),
            input_length=len(text),
            context=context,
            scanned_at=now,
        )

    def _heuristics(
        self, text: str, context: str, source_id: str, now: datetime,
    ) -> list[Finding]:
        found: list[Finding] = []

        def emit(kind: FindingKind, severity: Severity, **evidence: Any) -> None:
            capped = min(severity, _HEURISTIC_CAP, key=lambda s: s.rank)
            found.append(Finding(
                kind=kind,
                source_id=source_id,
                severity=capped,
                evidence={"heuristic": kind.value, "context": context, **evidence},
                timestamp=now,
                confidence=0.6,
            ))

        for pattern in _UNUSUAL_SEQUENCES:
            match = pattern.search(text)
            if match:
                emit(
                    FindingKind.UNUSUAL_SEQUENCE, Severity.MEDIUM,
                    excerpt=sanitize_evidence(match.group(0), self._evidence_max),
                )
                break

        for pattern in _ENCODING_ESCAPES:
            match = pattern.search(text)
            if match:
                emit(
                    FindingKind.ENCODING_ATTEMPT, Severity.HIGH,
                    excerpt=sanitize_evidence(match.group(0), self._evidence_max),
                )
                break

        limit = self._limits.get(context)
        if limit is not None and len(text) > limit:
            emit(
                FindingKind.SUSPICIOUS_LENGTH, Severity.MEDIUM,
                length=len(text), limit=limit,
            )
        return found

    def _fail_open(self, source_id: str, context: str, exc: ScanFailure) -> ScanResult:
        logger.warning(
            "Unscannable %s input from %s (%s); failing open", context, source_id, exc.code,
        )
        finding = Finding(
            kind=FindingKind.UNSCANNABLE_INPUT,
            source_id=source_id,
            severity=Severity.LOW,
            evidence={"context": context, **exc.to_dict()["error"]},
            timestamp=self._clock(),
            confidence=0.1,
        )
        result = ScanResult(safe=True, findings=(finding,), context=context)
        if self._log is not None:
            self._log.submit(create_incident_record(
                record_type="scan",
                source_id=source_id,
                severity=Severity.LOW,
                summary=f"Unscannable {context} input; failed open",
                payload={"context": context, "findings": [finding.to_dict()]},
                created_at=finding.timestamp,
            ))
        return result

    def _record(self, result: ScanResult, text: str, source_id: str) -> None:
        if self._log is None:
            return
        severity = result.severity
        logger.debug(
            "Scan of %s input from %s produced %d findings (max %s)",
            result.context, source_id, len(result.findings), severity,
        )
        self._log.submit(create_incident_record(
            record_type="scan",
            source_id=source_id,
            severity=severity,
            summary=f"{len(result.findings)} findings in {result.context} input",
            payload={
                "context": result.context,
                "input_length": result.input_length,
                "excerpt": sanitize_evidence(text, self._evidence_max),
                "findings": [f.to_dict() for f in result.findings],
            },
            created_at=result.scanned_at,
        ))
