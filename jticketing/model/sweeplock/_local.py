import asyncio


class SweepLease:
    """In-process lease: a tick is skipped while the previous one runs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()

    async def close(self) -> None:
        return None
