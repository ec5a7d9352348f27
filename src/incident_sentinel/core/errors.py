"""Incident Sentinel error hierarchy.

Hierarchy
---------
::

    SentinelError
    +-- DetectionError        (SE-1xx)  recovered locally, never reach callers
    +-- ResponseError         (SE-2xx)  enforcement and honeypot errors
    +-- PersistenceError      (SE-3xx)  incident log availability
    +-- ConfigurationError    (SE-4xx)  fatal at start-up

Propagation policy
------------------
Detection-path errors are always recovered where they occur so the engine
stays available under adversarial load.  Only :class:`ConfigurationError`
is fatal: the engine refuses to start with an incomplete ruleset.

Usage
-----
Catch by category::

    try:
        engine = SecurityEngine(config, enforcer)
    except ConfigurationError:
        # handles MissingSignatureLibrary, MalformedSeverityTable, ...
        ...
"""
from __future__ import annotations

from typing import Any

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class SentinelError(Exception):
    """Base exception for all Incident Sentinel errors.

    Attributes
    ----------
    code : str
        Error code, e.g. ``"SE-200"``.
    message : str
        Human-readable description (MUST NOT contain raw attack payloads).
    details : dict[str, Any]
        Machine-readable context specific to the error instance.
    """

    code: str = "SE-000"
    message: str = "Unknown Incident Sentinel error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.details: dict[str, Any] = details or {}
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the error for incident records and status payloads."""
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["detail"] = self.details
        return {"error": payload}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ===================================================================
# Category base classes
# ===================================================================

class DetectionError(SentinelError):
    """SE-1xx -- Detection-path errors."""

    code = "SE-1XX"


class ResponseError(SentinelError):
    """SE-2xx -- Countermeasure and honeypot errors."""

    code = "SE-2XX"


class PersistenceError(SentinelError):
    """SE-3xx -- Incident log errors."""

    code = "SE-3XX"


class ConfigurationError(SentinelError):
    """SE-4xx -- Start-up configuration errors."""

    code = "SE-4XX"


# ===================================================================
# SE-1xx  Detection
# ===================================================================

class ScanFailure(DetectionError):
    """SE-100 -- Input could not be converted to scannable text."""

    code = "SE-100"
    message = "Input could not be scanned"


# ===================================================================
# SE-2xx  Response
# ===================================================================

class EnforcementFailure(ResponseError):
    """SE-200 -- An enforcer call did not complete."""

    code = "SE-200"
    message = "Countermeasure enforcement failed"


class EnforcerUnavailable(EnforcementFailure):
    """SE-201 -- The enforcer raised or could not be reached."""

    code = "SE-201"
    message = "Enforcer is unreachable"


class EnforcementTimeout(EnforcementFailure):
    """SE-202 -- The enforcer did not answer within the per-call timeout."""

    code = "SE-202"
    message = "Enforcer call timed out"


class UnknownHoneypot(ResponseError):
    """SE-210 -- No honeypot is registered under the given id."""

    code = "SE-210"
    message = "Honeypot not found"


# ===================================================================
# SE-3xx  Persistence
# ===================================================================

class LogUnavailable(PersistenceError):
    """SE-300 -- The incident store rejected a write or read."""

    code = "SE-300"
    message = "Incident log is unavailable"


# ===================================================================
# SE-4xx  Configuration
# ===================================================================

class MissingSignatureLibrary(ConfigurationError):
    """SE-400 -- The scanner was given no signatures."""

    code = "SE-400"
    message = "Signature library is empty"


class MalformedSeverityTable(ConfigurationError):
    """SE-401 -- The severity/countermeasure table is incomplete or invalid."""

    code = "SE-401"
    message = "Severity table is malformed"


class InvalidSignature(ConfigurationError):
    """SE-402 -- A signature pattern does not compile."""

    code = "SE-402"
    message = "Signature pattern is invalid"
