"""
Per-Clock Locks
===============

In-process mutual exclusion keyed by ticket id.

Status events and sweep flushes for the same ticket must not interleave,
otherwise both could read the same checkpoint and count the interval twice.
The database row lock does the same job across processes; this lock keeps
coroutines of one process from queueing on the database.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from core.exceptions import ClockLockTimeoutException


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when unused.

    Usage:
        async with locks.acquire(ticket_id, timeout=5):
            ...
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def acquire(self, key: str, timeout: float) -> AsyncIterator[None]:
        """
        Hold the lock for `key`.

        Raises:
            ClockLockTimeoutException: not acquired within `timeout` seconds
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1

        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise ClockLockTimeoutException(key, timeout)

            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
