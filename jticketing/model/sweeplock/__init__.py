# model/sweeplock/__init__.py
from typing import Optional
import redis.asyncio as redis

from ._local import SweepLease as LocalSweepLease
from ._redis import SweepLease as RedisSweepLease


# Factory keeps the worker constructor-agnostic:
def new_lease(backend: str, *, r: Optional[redis.Redis] = None,
              ttl_seconds: int = 300):
    if backend == "redis":
        if r is None:
            raise RuntimeError("SweepLease(redis) requires r=redis.Redis")
        return RedisSweepLease(r=r, ttl_seconds=ttl_seconds)
    return LocalSweepLease()


__all__ = ["LocalSweepLease", "RedisSweepLease", "new_lease"]
