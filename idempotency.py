"""In-memory idempotency ledger with a bounded retention window.

State is process-local and lost on restart; a retry that arrives after a
restart is processed as a new request.
"""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from logging_utils import get_logger

logger = get_logger("idempotency")

DEFAULT_TTL_SECONDS = 3600
DEFAULT_REAP_INTERVAL_SECONDS = 1800


@dataclass
class IdempotencyRecord:
    result: Any
    created_at: float


class IdempotencyLedger:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _expired(self, record: IdempotencyRecord, now: float) -> bool:
        return now - record.created_at >= self.ttl_seconds

    def check(self, key: str | None) -> Any | None:
        """Return the memoized result for *key*, or ``None``.

        A stale record is dropped on read and reported as absent.
        """
        if not key:
            return None
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if self._expired(record, now):
                del self._records[key]
                return None
            return record.result

    def store(self, key: str | None, result: Any) -> None:
        if not key:
            return
        record = IdempotencyRecord(result=result, created_at=self._clock())
        with self._lock:
            self._records[key] = record

    def reap(self) -> int:
        """Drop every expired record and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if self._expired(record, now)]
            for key in expired:
                del self._records[key]
        return len(expired)

    async def run_reaper(self, interval_seconds: float = DEFAULT_REAP_INTERVAL_SECONDS) -> None:
        """Reap on a fixed interval until cancelled."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.reap()
            if removed:
                logger.info("Reaped %d expired idempotency records", removed)


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    waiters: int = 0


class KeyedLocks:
    """One ``asyncio.Lock`` per key, discarded once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, _KeyLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock(lock=asyncio.Lock())
        entry.waiters += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.waiters -= 1
            if entry.waiters == 0:
                self._locks.pop(key, None)
