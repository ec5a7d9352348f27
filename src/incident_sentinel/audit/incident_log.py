"""Buffered, degradable front-end to the append-only incident store.

Detectors run on the request path and must never wait on I/O, so they call
the synchronous :meth:`IncidentLog.submit`, which only chains the record and
enqueues it.  The periodic tick calls :meth:`IncidentLog.flush` to push the
buffer to the :class:`~incident_sentinel.core.interfaces.IncidentStore`.

When the store is unavailable the log keeps operating in memory: records
stay buffered (bounded; the oldest are dropped on overflow), reads fall back
to the in-memory ring, and :attr:`IncidentLog.degraded` is raised so status
queries can report staleness.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Sequence
from typing import TYPE_CHECKING

from incident_sentinel.audit.chain import (
    GENESIS_PREV_HASH,
    ChainVerificationResult,
    chain_record,
    verify_chain,
)
from incident_sentinel.core.errors import LogUnavailable

if TYPE_CHECKING:
    from incident_sentinel.audit.records import IncidentRecord
    from incident_sentinel.core.interfaces import IncidentStore

logger = logging.getLogger(__name__)


class IncidentLog:
    """Append-only incident log with a bounded write-behind buffer.

    Parameters
    ----------
    store:
        Durable backend.  ``None`` runs the log purely in memory.
    buffer_limit:
        Maximum number of unflushed records (and size of the in-memory
        ring used for degraded reads).
    """

    def __init__(
        self,
        store: IncidentStore | None = None,
        *,
        buffer_limit: int = 1000,
    ) -> None:
        self._store = store
        self._buffer: deque[IncidentRecord] = deque()
        self._ring: deque[IncidentRecord] = deque(maxlen=buffer_limit)
        self._buffer_limit = buffer_limit
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._sequence = 0
        self._last_hash = GENESIS_PREV_HASH
        self._dropped = 0
        self._degraded = False
        self._last_error: LogUnavailable | None = None

    # -- state ---------------------------------------------------------------

    @property
    def degraded(self) -> bool:
        """True while the store is failing writes or reads."""
        return self._degraded

    @property
    def dropped(self) -> int:
        """Number of buffered records discarded because the buffer was full."""
        return self._dropped

    @property
    def pending(self) -> int:
        """Number of records waiting to be flushed."""
        return len(self._buffer)

    @property
    def last_error(self) -> LogUnavailable | None:
        """The most recent store failure, if any."""
        return self._last_error

    # -- writes --------------------------------------------------------------

    def submit(self, record: IncidentRecord) -> IncidentRecord:
        """Chain *record* and enqueue it for the next flush.

        Never blocks on I/O and never raises on store problems.
        """
        with self._lock:
            self._sequence += 1
            chained = chain_record(
                record,
                sequence=self._sequence,
                previous_hash=self._last_hash,
            )
            self._last_hash = chained.record_hash
            self._ring.append(chained)
            if self._store is not None:
                if len(self._buffer) >= self._buffer_limit:
                    self._buffer.popleft()
                    self._dropped += 1
                self._buffer.append(chained)
        return chained

    async def flush(self) -> int:
        """Write buffered records to the store, oldest first.

        Returns the number of records written.  Stops at the first failure,
        leaving the remaining records buffered.
        """
        if self._store is None:
            return 0
        written = 0
        async with self._flush_lock:
            while True:
                with self._lock:
                    if not self._buffer:
                        break
                    record = self._buffer[0]
                try:
                    await self._store.append(record)
                except Exception as exc:
                    self._mark_degraded(exc, "append")
                    return written
                with self._lock:
                    if self._buffer and self._buffer[0] is record:
                        self._buffer.popleft()
                written += 1
        if self._degraded:
            logger.info("Incident store recovered after %d flushed records", written)
        self._degraded = False
        return written

    # -- reads ---------------------------------------------------------------

    async def recent(self, n: int) -> list[IncidentRecord]:
        """Return up to *n* most recent records, oldest first.

        Falls back to the in-memory ring when the store is unavailable.
        """
        if n <= 0:
            return []
        if self._store is None:
            return self._ring_tail(n)
        try:
            stored = await self._store.recent(n)
        except Exception as exc:
            self._mark_degraded(exc, "recent")
            return self._ring_tail(n)
        seen = {r.record_id for r in stored}
        with self._lock:
            unflushed = [r for r in self._buffer if r.record_id not in seen]
        merged = sorted(stored + unflushed, key=lambda r: r.sequence)
        return merged[-n:]

    async def verify_chain(
        self, records: Sequence[IncidentRecord] | None = None,
    ) -> ChainVerificationResult:
        """Verify *records*, or the most recent records when omitted."""
        if records is None:
            records = await self.recent(self._buffer_limit)
        return verify_chain(records)

    def _ring_tail(self, n: int) -> list[IncidentRecord]:
        with self._lock:
            return list(self._ring)[-n:]

    def _mark_degraded(self, exc: Exception, operation: str) -> None:
        self._degraded = True
        self._last_error = LogUnavailable(
            f"Incident store {operation} failed",
            details={"operation": operation, "cause": type(exc).__name__},
        )
        logger.warning(
            "Incident store %s failed (%s); continuing in memory with %d buffered",
            operation,
            type(exc).__name__,
            len(self._buffer),
        )
