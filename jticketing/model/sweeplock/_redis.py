from __future__ import annotations
import secrets
from typing import Optional

import redis.asyncio as redis


SWEEP_KEY = "jticketing:sweep:lease"

# delete only if we still own it
_RELEASE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class SweepLease:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self._token: Optional[str] = None

    async def acquire(self) -> bool:
        token = secrets.token_hex(16)
        # NX lease; expires on its own if the holder dies mid-tick
        ok = await self.r.set(SWEEP_KEY, token, nx=True, ex=self.ttl)
        if ok:
            self._token = token
        return bool(ok)

    async def release(self) -> None:
        if self._token is None:
            return
        await self.r.eval(_RELEASE, 1, SWEEP_KEY, self._token)
        self._token = None

    async def close(self) -> None:
        await self.r.aclose()
