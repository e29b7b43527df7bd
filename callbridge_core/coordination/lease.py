"""
Lease Backends
==============

A lease is a single key holding the id of its owner, with an expiry. Only the
owner can extend or release it; anyone can take it once it has expired.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

from callbridge_core.core.redis import KeySpace, LuaScript


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class LeaseBackend(ABC):
    """Abstract base class for lease storage."""

    @abstractmethod
    async def acquire(self, holder: str, ttl_ms: int) -> bool:
        """Take the lease if it is free, or extend it if ``holder`` owns it."""
        pass

    @abstractmethod
    async def renew(self, holder: str, ttl_ms: int) -> bool:
        """Extend the lease. False if ``holder`` no longer owns it."""
        pass

    @abstractmethod
    async def release(self, holder: str) -> bool:
        """Drop the lease if ``holder`` owns it."""
        pass

    @abstractmethod
    async def get_holder(self) -> Optional[str]:
        pass


class InMemoryLeaseBackend(LeaseBackend):
    """In-process lease. Share one instance between coordinators to simulate a cluster."""

    def __init__(self, clock: Callable[[], int] = monotonic_ms):
        self._clock = clock
        self._lease: Optional[Tuple[str, int]] = None
        self._lock = asyncio.Lock()

    def _current(self) -> Optional[Tuple[str, int]]:
        if self._lease and self._lease[1] <= self._clock():
            self._lease = None
        return self._lease

    async def acquire(self, holder: str, ttl_ms: int) -> bool:
        async with self._lock:
            current = self._current()
            if current is not None and current[0] != holder:
                return False
            self._lease = (holder, self._clock() + ttl_ms)
            return True

    async def renew(self, holder: str, ttl_ms: int) -> bool:
        async with self._lock:
            current = self._current()
            if current is None or current[0] != holder:
                return False
            self._lease = (holder, self._clock() + ttl_ms)
            return True

    async def release(self, holder: str) -> bool:
        async with self._lock:
            current = self._current()
            if current is None or current[0] != holder:
                return False
            self._lease = None
            return True

    async def get_holder(self) -> Optional[str]:
        current = self._current()
        return current[0] if current else None


class RedisLeaseBackend(LeaseBackend):
    """Lease stored under ``<prefix>:leader:lease`` with ``SET NX PX``."""

    RENEW_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('PEXPIRE', KEYS[1], ARGV[2])
    end
    return 0
    """

    RELEASE_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, client, keys: Optional[KeySpace] = None):
        self._redis = client
        self._key = (keys or KeySpace()).leader_lease
        self._renew = LuaScript(self.RENEW_SCRIPT)
        self._release = LuaScript(self.RELEASE_SCRIPT)

    async def acquire(self, holder: str, ttl_ms: int) -> bool:
        if await self._redis.set(self._key, holder, nx=True, px=ttl_ms):
            return True
        return await self.renew(holder, ttl_ms)

    async def renew(self, holder: str, ttl_ms: int) -> bool:
        return int(await self._renew(self._redis, [self._key], [holder, ttl_ms])) == 1

    async def release(self, holder: str) -> bool:
        return int(await self._release(self._redis, [self._key], [holder])) == 1

    async def get_holder(self) -> Optional[str]:
        return await self._redis.get(self._key)


__all__ = [
    "monotonic_ms",
    "LeaseBackend",
    "InMemoryLeaseBackend",
    "RedisLeaseBackend",
]
