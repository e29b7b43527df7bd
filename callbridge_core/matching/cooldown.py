"""
Recent match cache.

Two users who were just paired are not paired again until the cooldown
expires. Keys are order-independent.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from callbridge_core.calls.base import now_ms
from callbridge_core.core.redis import KeySpace


def _pair(first: str, second: str) -> Tuple[str, str]:
    a, b = sorted((first, second))
    return a, b


class RecentMatchCache(ABC):
    """Abstract base class for the recent match cache."""

    @abstractmethod
    async def has_recent_match(self, first_user: str, second_user: str) -> bool:
        pass

    @abstractmethod
    async def record_match(self, first_user: str, second_user: str) -> None:
        pass


class InMemoryRecentMatchCache(RecentMatchCache):
    def __init__(self, cooldown_seconds: int = 86400, clock: Callable[[], int] = now_ms):
        self._cooldown_ms = cooldown_seconds * 1000
        self._clock = clock
        self._matches: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def has_recent_match(self, first_user: str, second_user: str) -> bool:
        async with self._lock:
            key = _pair(first_user, second_user)
            expires_at = self._matches.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._matches[key]
                return False
            return True

    async def record_match(self, first_user: str, second_user: str) -> None:
        async with self._lock:
            self._matches[_pair(first_user, second_user)] = self._clock() + self._cooldown_ms


class RedisRecentMatchCache(RecentMatchCache):
    """Stores ``<prefix>:recent:<a>:<b>`` with an expiry equal to the cooldown."""

    def __init__(self, client, keys: Optional[KeySpace] = None, cooldown_seconds: int = 86400):
        self._redis = client
        self._keys = keys or KeySpace()
        self._cooldown_seconds = cooldown_seconds

    async def has_recent_match(self, first_user: str, second_user: str) -> bool:
        return bool(await self._redis.exists(self._keys.recent_match(first_user, second_user)))

    async def record_match(self, first_user: str, second_user: str) -> None:
        await self._redis.set(
            self._keys.recent_match(first_user, second_user),
            now_ms(),
            ex=self._cooldown_seconds,
        )


__all__ = ["RecentMatchCache", "InMemoryRecentMatchCache", "RedisRecentMatchCache"]
