"""Process-wide map of dynamically keyed asyncio locks.

Entries are created on first use and dropped by `sweep()` once nobody holds
or waits on them. Get-or-create and the user count change without an
intervening await, so the map stays consistent on a single event loop.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLockRegistry:

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @asynccontextmanager
    async def hold(self, key: str):
        """Serialize every block entered with the same key."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def sweep(self, limit: int = 100) -> int:
        """Remove up to `limit` idle entries. Returns how many were removed."""
        idle = [
            key for key, entry in self._entries.items()
            if entry.users == 0 and not entry.lock.locked()
        ][:limit]
        for key in idle:
            del self._entries[key]
        if idle:
            logger.info("Lock sweep | registry=%s | removed=%d | remaining=%d", self.name, len(idle), len(self._entries))
        return len(idle)
