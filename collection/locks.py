import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    """
    Hands out one asyncio.Lock per key, so work on the same key is serialized
    while different keys proceed independently.
    Entries are dropped once nobody holds or waits for them.
    """
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def session(self, session_id: str):
        return self.hold(f"session:{session_id}")

    def driver(self, driver_id: int):
        return self.hold(f"driver:{driver_id}")

    def __len__(self) -> int:
        return len(self._locks)
