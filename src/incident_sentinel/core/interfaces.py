"""Incident Sentinel abstract interfaces and in-memory implementations.

This module defines the *structural* interfaces (``typing.Protocol``) for
the external collaborators the engine depends on but never implements:

* :class:`Enforcer` -- the gateway / firewall / notification substrate that
  actually blocks, throttles and alerts.
* :class:`IncidentStore` -- the durable, append-only incident store.
* :class:`RequestInterceptor` -- the request-handling layer that feeds the
  engine and can invalidate a session on request.

Every Protocol class is decorated with ``@runtime_checkable`` so that
``isinstance`` checks work at run-time in addition to static analysis.

The in-memory implementations are suitable for testing and local
development only.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from incident_sentinel.audit.records import IncidentRecord

# ===================================================================
# Protocol (interface) definitions
# ===================================================================

@runtime_checkable
class Enforcer(Protocol):
    """Enforcement substrate invoked by the countermeasure dispatcher.

    Implementations MAY block or fail; the dispatcher bounds every call
    with a timeout and treats timeouts as failures.
    """

    async def block(self, source_id: str, duration: timedelta | None) -> None:
        """Block *source_id* for *duration* (``None`` = until manual review)."""
        ...

    async def throttle(self, source_id: str, delay_ms: int) -> None:
        """Delay every request from *source_id* by *delay_ms*."""
        ...

    async def alert(self, payload: dict[str, Any]) -> None:
        """Send an operator alert."""
        ...


@runtime_checkable
class IncidentStore(Protocol):
    """Append-only durable store for incident records."""

    async def append(self, record: IncidentRecord) -> None:
        """Persist *record*.  Raises on unavailability."""
        ...

    async def recent(self, n: int) -> list[IncidentRecord]:
        """Return up to *n* most recent records, oldest first."""
        ...


@runtime_checkable
class RequestInterceptor(Protocol):
    """Request-handling layer that feeds the engine.

    The engine is handed to :meth:`attach` at construction time instead of
    patching any global networking primitive.
    """

    def attach(self, engine: Any) -> None:
        """Register *engine* as the receiver of scan/record/observe events."""
        ...

    async def invalidate_session(self, source_id: str) -> None:
        """Terminate any live session belonging to *source_id*."""
        ...


# ===================================================================
# In-memory implementations (testing / development)
# ===================================================================

class InMemoryIncidentStore:
    """In-memory incident store.

    Records are kept in append order.  Setting :attr:`available` to
    ``False`` simulates an outage: every call raises ``ConnectionError``.
    """

    def __init__(self) -> None:
        self._records: list[IncidentRecord] = []
        self.available = True

    async def append(self, record: IncidentRecord) -> None:
        """Append *record*."""
        if not self.available:
            raise ConnectionError("incident store offline")
        self._records.append(record)

    async def recent(self, n: int) -> list[IncidentRecord]:
        """Return the last *n* records."""
        if not self.available:
            raise ConnectionError("incident store offline")
        if n <= 0:
            return []
        return list(self._records[-n:])

    @property
    def records(self) -> list[IncidentRecord]:
        """Return a copy of every stored record (test helper)."""
        return list(self._records)


class RecordingEnforcer:
    """Enforcer that records every call instead of acting on the network.

    Parameters
    ----------
    fail_on:
        Method names (``"block"``, ``"throttle"``, ``"alert"``) that raise
        ``ConnectionError`` to simulate an unreachable substrate.
    delay_seconds:
        Artificial latency added to every call, used to exercise timeouts.
    """

    def __init__(
        self,
        *,
        fail_on: set[str] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fail_on: set[str] = set(fail_on or ())
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if name in self.fail_on:
            raise ConnectionError(f"enforcer {name} unreachable")

    async def block(self, source_id: str, duration: timedelta | None) -> None:
        await self._call("block", source_id, duration)

    async def throttle(self, source_id: str, delay_ms: int) -> None:
        await self._call("throttle", source_id, delay_ms)

    async def alert(self, payload: dict[str, Any]) -> None:
        await self._call("alert", payload)

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        """Return the argument tuples of every call to *name*."""
        return [args for call, args in self.calls if call == name]


class NullInterceptor:
    """Interceptor that only remembers what it was asked to do."""

    def __init__(self) -> None:
        self.engine: Any = None
        self.invalidated: list[str] = []

    def attach(self, engine: Any) -> None:
        self.engine = engine

    async def invalidate_session(self, source_id: str) -> None:
        self.invalidated.append(source_id)
