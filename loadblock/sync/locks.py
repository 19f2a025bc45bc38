import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLocks:
    """Per-key asyncio mutual exclusion (one lock per draft / per record).

    Locks are created on first use and dropped once nobody holds or waits
    on them, so the registry only ever contains keys under contention.
    Not reentrant: a holder must not acquire the same key again.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key):
        key = str(key)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                self._locks.pop(key, None)

    def is_locked(self, key) -> bool:
        lock = self._locks.get(str(key))
        return bool(lock and lock.locked())


def draft_key(draft_id) -> str:
    return f"draft:{draft_id}"


def record_key(record_id) -> str:
    return f"record:{record_id}"
