"""Redis client factory and key layout."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import NoScriptError

logger = structlog.get_logger(__name__)


def create_redis(url: str) -> "redis.Redis":
    """Create an asyncio Redis client that returns ``str`` values."""
    client = redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
    )
    logger.info("redis_client_created", url=url)
    return client


class KeySpace:
    """
    All keys used by the service, under one configurable prefix.

    Usage:
        keys = KeySpace("callbridge")
        keys.queue            # "callbridge:queue"
        keys.active_call("x") # "callbridge:call:active:x"
    """

    def __init__(self, prefix: str = "callbridge"):
        self.prefix = prefix.rstrip(":")

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    @property
    def queue(self) -> str:
        return self._key("queue")

    @property
    def queue_payloads(self) -> str:
        return self._key("queue", "payloads")

    @property
    def queue_ids(self) -> str:
        return self._key("queue", "ids")

    @property
    def queue_claims(self) -> str:
        return self._key("queue", "claims")

    def recent_match(self, first: str, second: str) -> str:
        a, b = sorted((first, second))
        return self._key("recent", a, b)

    def active_call(self, call_id: str) -> str:
        return self._key("call", "active", call_id)

    @property
    def active_call_prefix(self) -> str:
        return self._key("call", "active", "")

    @property
    def channel_calls(self) -> str:
        return self._key("call", "channels")

    @property
    def active_call_ids(self) -> str:
        return self._key("call", "active_ids")

    def ended_call(self, call_id: str) -> str:
        return self._key("call", "ended", call_id)

    @property
    def leader_lease(self) -> str:
        return self._key("leader", "lease")


class LuaScript:
    """
    A Lua script loaded once with SCRIPT LOAD and run with EVALSHA.

    Reloads transparently when the server has flushed its script cache.
    """

    def __init__(self, source: str):
        self.source = source
        self._sha: Optional[str] = None

    async def __call__(self, client: "redis.Redis", keys: list, args: list) -> Any:
        if self._sha is None:
            self._sha = await client.script_load(self.source)
        try:
            return await client.evalsha(self._sha, len(keys), *keys, *args)
        except NoScriptError:
            self._sha = await client.script_load(self.source)
            return await client.evalsha(self._sha, len(keys), *keys, *args)


__all__ = ["create_redis", "KeySpace", "LuaScript"]
