"""
Queue Storage Backends
======================

Storage for waiting call requests. The Redis backend keeps four keys:

- ``<prefix>:queue``          sorted set, member = channel id, score = ordering score
- ``<prefix>:queue:payloads`` hash, channel id -> encoded request
- ``<prefix>:queue:ids``      hash, ``id:<request id>`` -> channel id and
                              ``ch:<channel id>`` -> request id
- ``<prefix>:queue:claims``   hash, channel id -> claim time (ms)

A matcher claims both requests before it commits a pair. Claimed entries keep
their place in the sorted set but are hidden from ``get_pending``. Releasing a
claim only succeeds while the entry still exists, so a request cancelled
during a match never comes back. Committing removes both entries in one step,
and only if both claims are still held.

Every mutation runs as a single Lua script so concurrent workers never
observe a half-written entry. The in-memory backend gives the same semantics
inside one process for development and tests.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from callbridge_core.calls.base import (
    AlreadyQueuedError,
    CallRequest,
    ChannelInCallError,
    CorruptedPayloadError,
    QueueFullError,
    QueueStatus,
)
from callbridge_core.calls.serialization import decode_request, encode_request
from callbridge_core.core.redis import KeySpace, LuaScript

logger = structlog.get_logger(__name__)

ChannelInCallCheck = Callable[[str], Awaitable[bool]]


class QueueStore(ABC):
    """Abstract base class for queue storage backends."""

    @abstractmethod
    async def add(
        self,
        request: CallRequest,
        score: int,
        ttl_ms: int,
        capacity: int,
    ) -> QueueStatus:
        """Insert a request.

        Raises:
            AlreadyQueuedError: the channel already has an entry
            ChannelInCallError: the channel is in a live call
            QueueFullError: ``capacity`` is positive and reached
        """
        pass

    @abstractmethod
    async def remove_by_id(self, request_id: str) -> bool:
        """Remove a request by id, claimed or not. False if it was already gone."""
        pass

    @abstractmethod
    async def remove_by_channel(self, channel_id: str) -> bool:
        """Remove whatever request the channel has, claimed or not. False if none."""
        pass

    @abstractmethod
    async def claim(self, request_id: str, now_ms: int) -> bool:
        """Reserve a queued request for a match. False if it is gone or already claimed."""
        pass

    @abstractmethod
    async def release(self, request_id: str) -> bool:
        """Return a claimed request to the queue. False if it was removed meanwhile."""
        pass

    @abstractmethod
    async def commit(self, request_ids: Sequence[str]) -> bool:
        """Remove every given request if all of them are still claimed, else none."""
        pass

    @abstractmethod
    async def release_stale(self, cutoff_ms: int) -> int:
        """Release claims taken before ``cutoff_ms``. Returns the number released."""
        pass

    @abstractmethod
    async def get_pending(self) -> List[CallRequest]:
        """Unclaimed requests in queue order; corrupted entries are purged."""
        pass

    @abstractmethod
    async def get_by_channel(self, channel_id: str) -> Optional[CallRequest]:
        pass

    @abstractmethod
    async def contains(self, channel_id: str) -> bool:
        pass

    @abstractmethod
    async def length(self) -> int:
        pass

    @abstractmethod
    async def status(self, channel_id: str) -> Optional[QueueStatus]:
        pass

    @abstractmethod
    async def reconcile(self) -> int:
        """Drop orphaned index entries. Returns the number of fixes."""
        pass

    async def remove_expired(self, cutoff_ms: int) -> int:
        """Remove requests enqueued before ``cutoff_ms``."""
        removed = 0
        for request in await self.get_pending():
            if request.timestamp < cutoff_ms and await self.remove_by_id(request.id):
                removed += 1
        return removed


# =============================================================================
# In-Memory Backend
# =============================================================================


class InMemoryQueueStore(QueueStore):
    """In-memory queue for development and tests.

    Payloads are stored encoded, exactly as the Redis backend stores them.
    ``channel_in_call`` is consulted under the queue lock on every insert.
    Warning: This does not work across multiple processes!
    """

    def __init__(self, channel_in_call: Optional[ChannelInCallCheck] = None):
        self._scores: Dict[str, int] = {}
        self._payloads: Dict[str, str] = {}
        self._channel_by_id: Dict[str, str] = {}
        self._id_by_channel: Dict[str, str] = {}
        self._claims: Dict[str, int] = {}
        self._channel_in_call = channel_in_call
        self._lock = asyncio.Lock()

    def _ordered(self) -> List[str]:
        return [
            channel for channel, _ in sorted(
                self._scores.items(), key=lambda item: (item[1], item[0])
            )
        ]

    def _channel_for(self, request_id: str) -> Optional[str]:
        channel_id = self._channel_by_id.get(request_id)
        if channel_id is None or self._id_by_channel.get(channel_id) != request_id:
            return None
        if channel_id not in self._scores:
            return None
        return channel_id

    def _drop(self, channel_id: str) -> bool:
        existed = self._scores.pop(channel_id, None) is not None
        self._payloads.pop(channel_id, None)
        self._claims.pop(channel_id, None)
        request_id = self._id_by_channel.pop(channel_id, None)
        if request_id is not None:
            self._channel_by_id.pop(request_id, None)
        return existed

    async def add(
        self,
        request: CallRequest,
        score: int,
        ttl_ms: int,
        capacity: int,
    ) -> QueueStatus:
        async with self._lock:
            if request.channel_id in self._scores:
                raise AlreadyQueuedError(f"Channel {request.channel_id} is already queued")
            if self._channel_in_call is not None and await self._channel_in_call(request.channel_id):
                raise ChannelInCallError(f"Channel {request.channel_id} is already in a call")
            if capacity > 0 and len(self._scores) >= capacity:
                raise QueueFullError(f"Queue is full ({capacity} requests)")

            self._scores[request.channel_id] = score
            self._payloads[request.channel_id] = encode_request(request)
            self._channel_by_id[request.id] = request.channel_id
            self._id_by_channel[request.channel_id] = request.id

            order = self._ordered()
            return QueueStatus(
                position=order.index(request.channel_id) + 1,
                queue_length=len(order),
            )

    async def remove_by_id(self, request_id: str) -> bool:
        async with self._lock:
            channel_id = self._channel_by_id.pop(request_id, None)
            if channel_id is None or self._id_by_channel.get(channel_id) != request_id:
                return False
            return self._drop(channel_id)

    async def remove_by_channel(self, channel_id: str) -> bool:
        async with self._lock:
            return self._drop(channel_id)

    async def claim(self, request_id: str, now_ms: int) -> bool:
        async with self._lock:
            channel_id = self._channel_for(request_id)
            if channel_id is None or channel_id in self._claims:
                return False
            self._claims[channel_id] = now_ms
            return True

    async def release(self, request_id: str) -> bool:
        async with self._lock:
            channel_id = self._channel_for(request_id)
            if channel_id is None:
                return False
            return self._claims.pop(channel_id, None) is not None

    async def commit(self, request_ids: Sequence[str]) -> bool:
        async with self._lock:
            channels = [self._channel_for(request_id) for request_id in request_ids]
            if any(channel_id is None or channel_id not in self._claims for channel_id in channels):
                return False
            for channel_id in channels:
                self._drop(channel_id)
            return True

    async def release_stale(self, cutoff_ms: int) -> int:
        async with self._lock:
            stale = [channel_id for channel_id, claimed_at in self._claims.items() if claimed_at < cutoff_ms]
            for channel_id in stale:
                del self._claims[channel_id]
            return len(stale)

    async def get_pending(self) -> List[CallRequest]:
        async with self._lock:
            pending = []
            for channel_id in self._ordered():
                if channel_id in self._claims:
                    continue
                payload = self._payloads.get(channel_id)
                try:
                    if payload is None:
                        raise CorruptedPayloadError("Missing queue payload")
                    pending.append(decode_request(payload))
                except CorruptedPayloadError as e:
                    logger.warning("corrupted_queue_entry_purged", channel_id=channel_id, error=str(e))
                    self._drop(channel_id)
            return pending

    async def get_by_channel(self, channel_id: str) -> Optional[CallRequest]:
        async with self._lock:
            payload = self._payloads.get(channel_id)
            if payload is None or channel_id not in self._scores:
                return None
            try:
                return decode_request(payload)
            except CorruptedPayloadError:
                self._drop(channel_id)
                return None

    async def contains(self, channel_id: str) -> bool:
        return channel_id in self._scores

    async def length(self) -> int:
        return len(self._scores)

    async def status(self, channel_id: str) -> Optional[QueueStatus]:
        async with self._lock:
            if channel_id not in self._scores:
                return None
            order = self._ordered()
            return QueueStatus(position=order.index(channel_id) + 1, queue_length=len(order))

    async def reconcile(self) -> int:
        async with self._lock:
            fixed = 0
            for channel_id in list(self._scores):
                if channel_id not in self._payloads:
                    self._drop(channel_id)
                    fixed += 1
            for channel_id in list(self._payloads):
                if channel_id not in self._scores:
                    self._payloads.pop(channel_id, None)
                    fixed += 1
            for request_id, channel_id in list(self._channel_by_id.items()):
                if self._id_by_channel.get(channel_id) != request_id:
                    del self._channel_by_id[request_id]
                    fixed += 1
            for channel_id in list(self._id_by_channel):
                if channel_id not in self._scores:
                    del self._id_by_channel[channel_id]
                    fixed += 1
            for channel_id in list(self._claims):
                if channel_id not in self._scores:
                    del self._claims[channel_id]
                    fixed += 1
            return fixed


# =============================================================================
# Redis Backend
# =============================================================================


class RedisQueueStore(QueueStore):
    """
    Redis-backed queue shared by every worker.

    Example:
        store = RedisQueueStore(create_redis("redis://localhost:6379/0"))
        status = await store.add(request, score, ttl_ms=1_800_000, capacity=1000)
    """

    # KEYS: queue, payloads, ids, claims, channel -> call map
    # ARGV: channel, request id, score, payload, ttl ms, capacity, active call key prefix
    #
    # The active call key is built inside the script, so every key under the
    # prefix must live on one node (single Redis or one hash slot).
    ENQUEUE_SCRIPT = """
    local channel = ARGV[1]
    if redis.call('ZSCORE', KEYS[1], channel) then
        return {-1, 0}
    end

    local call_id = redis.call('HGET', KEYS[5], channel)
    if call_id and redis.call('EXISTS', ARGV[7] .. call_id) == 1 then
        return {-3, 0}
    end

    local size = redis.call('ZCARD', KEYS[1])
    local capacity = tonumber(ARGV[6])
    if capacity > 0 and size >= capacity then
        return {-2, size}
    end

    redis.call('ZADD', KEYS[1], ARGV[3], channel)
    redis.call('HSET', KEYS[2], channel, ARGV[4])
    redis.call('HSET', KEYS[3], 'id:' .. ARGV[2], channel, 'ch:' .. channel, ARGV[2])
    for i = 1, 3 do
        redis.call('PEXPIRE', KEYS[i], ARGV[5])
    end

    local rank = redis.call('ZRANK', KEYS[1], channel)
    return {rank + 1, size + 1}
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: request id
    DEQUEUE_BY_ID_SCRIPT = """
    local channel = redis.call('HGET', KEYS[3], 'id:' .. ARGV[1])
    if not channel then
        return 0
    end
    redis.call('HDEL', KEYS[3], 'id:' .. ARGV[1])

    -- The channel may have re-queued under a newer request
    if redis.call('HGET', KEYS[3], 'ch:' .. channel) ~= ARGV[1] then
        return 0
    end

    redis.call('HDEL', KEYS[3], 'ch:' .. channel)
    redis.call('HDEL', KEYS[2], channel)
    redis.call('HDEL', KEYS[4], channel)
    return redis.call('ZREM', KEYS[1], channel)
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: channel
    DEQUEUE_BY_CHANNEL_SCRIPT = """
    local channel = ARGV[1]
    local request_id = redis.call('HGET', KEYS[3], 'ch:' .. channel)
    if request_id then
        redis.call('HDEL', KEYS[3], 'ch:' .. channel, 'id:' .. request_id)
    end
    redis.call('HDEL', KEYS[2], channel)
    redis.call('HDEL', KEYS[4], channel)
    return redis.call('ZREM', KEYS[1], channel)
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: request id, claim time
    CLAIM_SCRIPT = """
    local channel = redis.call('HGET', KEYS[3], 'id:' .. ARGV[1])
    if not channel or redis.call('HGET', KEYS[3], 'ch:' .. channel) ~= ARGV[1] then
        return 0
    end
    if not redis.call('ZSCORE', KEYS[1], channel) then
        return 0
    end
    return redis.call('HSETNX', KEYS[4], channel, ARGV[2])
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: request id
    RELEASE_SCRIPT = """
    local channel = redis.call('HGET', KEYS[3], 'id:' .. ARGV[1])
    if not channel or redis.call('HGET', KEYS[3], 'ch:' .. channel) ~= ARGV[1] then
        return 0
    end
    if not redis.call('ZSCORE', KEYS[1], channel) then
        return 0
    end
    return redis.call('HDEL', KEYS[4], channel)
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: request ids...
    COMMIT_SCRIPT = """
    local channels = {}
    for i, request_id in ipairs(ARGV) do
        local channel = redis.call('HGET', KEYS[3], 'id:' .. request_id)
        if not channel or redis.call('HGET', KEYS[3], 'ch:' .. channel) ~= request_id then
            return 0
        end
        if redis.call('HEXISTS', KEYS[4], channel) == 0 then
            return 0
        end
        channels[i] = channel
    end

    for i, channel in ipairs(channels) do
        redis.call('ZREM', KEYS[1], channel)
        redis.call('HDEL', KEYS[2], channel)
        redis.call('HDEL', KEYS[3], 'ch:' .. channel, 'id:' .. ARGV[i])
        redis.call('HDEL', KEYS[4], channel)
    end
    return 1
    """

    # KEYS: claims
    # ARGV: cutoff ms
    RELEASE_STALE_SCRIPT = """
    local released = 0
    local claims = redis.call('HGETALL', KEYS[1])
    for i = 1, #claims, 2 do
        if tonumber(claims[i + 1]) < tonumber(ARGV[1]) then
            released = released + redis.call('HDEL', KEYS[1], claims[i])
        end
    end
    return released
    """

    # KEYS: queue, payloads, ids, claims
    # ARGV: channel, payload seen by the caller ('' when it was missing)
    PURGE_SCRIPT = """
    local channel = ARGV[1]
    local current = redis.call('HGET', KEYS[2], channel)
    if current and current ~= ARGV[2] then
        return 0
    end
    if (not current) and ARGV[2] ~= '' then
        return 0
    end

    local request_id = redis.call('HGET', KEYS[3], 'ch:' .. channel)
    if request_id then
        redis.call('HDEL', KEYS[3], 'ch:' .. channel, 'id:' .. request_id)
    end
    redis.call('HDEL', KEYS[2], channel)
    redis.call('HDEL', KEYS[4], channel)
    redis.call('ZREM', KEYS[1], channel)
    return 1
    """

    # KEYS: queue, payloads, ids, claims
    RECONCILE_SCRIPT = """
    local fixed = 0

    local function drop_mapping(channel)
        local request_id = redis.call('HGET', KEYS[3], 'ch:' .. channel)
        if request_id then
            redis.call('HDEL', KEYS[3], 'ch:' .. channel, 'id:' .. request_id)
        end
        redis.call('HDEL', KEYS[4], channel)
    end

    -- Sorted set members without a payload
    for _, channel in ipairs(redis.call('ZRANGE', KEYS[1], 0, -1)) do
        if redis.call('HEXISTS', KEYS[2], channel) == 0 then
            redis.call('ZREM', KEYS[1], channel)
            drop_mapping(channel)
            fixed = fixed + 1
        end
    end

    -- Payloads without a sorted set member
    for _, channel in ipairs(redis.call('HKEYS', KEYS[2])) do
        if not redis.call('ZSCORE', KEYS[1], channel) then
            redis.call('HDEL', KEYS[2], channel)
            drop_mapping(channel)
            fixed = fixed + 1
        end
    end

    -- Stale id mappings
    local ids = redis.call('HGETALL', KEYS[3])
    for i = 1, #ids, 2 do
        local field = ids[i]
        local value = ids[i + 1]
        local kind = string.sub(field, 1, 3)
        local stale = false
        if kind == 'id:' then
            stale = redis.call('HGET', KEYS[3], 'ch:' .. value) ~= string.sub(field, 4)
        elseif kind == 'ch:' then
            stale = not redis.call('ZSCORE', KEYS[1], string.sub(field, 4))
        end
        if stale and redis.call('HDEL', KEYS[3], field) == 1 then
            fixed = fixed + 1
        end
    end

    -- Claims on entries that are gone
    for _, channel in ipairs(redis.call('HKEYS', KEYS[4])) do
        if not redis.call('ZSCORE', KEYS[1], channel) then
            redis.call('HDEL', KEYS[4], channel)
            fixed = fixed + 1
        end
    end

    return fixed
    """

    def __init__(self, client, keys: Optional[KeySpace] = None):
        self._redis = client
        self._keys = keys or KeySpace()
        self._enqueue = LuaScript(self.ENQUEUE_SCRIPT)
        self._dequeue_by_id = LuaScript(self.DEQUEUE_BY_ID_SCRIPT)
        self._dequeue_by_channel = LuaScript(self.DEQUEUE_BY_CHANNEL_SCRIPT)
        self._claim = LuaScript(self.CLAIM_SCRIPT)
        self._release = LuaScript(self.RELEASE_SCRIPT)
        self._commit = LuaScript(self.COMMIT_SCRIPT)
        self._release_stale = LuaScript(self.RELEASE_STALE_SCRIPT)
        self._purge = LuaScript(self.PURGE_SCRIPT)
        self._reconcile = LuaScript(self.RECONCILE_SCRIPT)

    @property
    def _key_list(self) -> List[str]:
        return [
            self._keys.queue,
            self._keys.queue_payloads,
            self._keys.queue_ids,
            self._keys.queue_claims,
        ]

    async def add(
        self,
        request: CallRequest,
        score: int,
        ttl_ms: int,
        capacity: int,
    ) -> QueueStatus:
        result = await self._enqueue(
            self._redis,
            self._key_list + [self._keys.channel_calls],
            [
                request.channel_id,
                request.id,
                score,
                encode_request(request),
                ttl_ms,
                capacity,
                self._keys.active_call_prefix,
            ],
        )
        position, size = int(result[0]), int(result[1])

        if position == -1:
            raise AlreadyQueuedError(f"Channel {request.channel_id} is already queued")
        if position == -2:
            raise QueueFullError(f"Queue is full ({size} requests)")
        if position == -3:
            raise ChannelInCallError(f"Channel {request.channel_id} is already in a call")

        return QueueStatus(position=position, queue_length=size)

    async def remove_by_id(self, request_id: str) -> bool:
        removed = await self._dequeue_by_id(self._redis, self._key_list, [request_id])
        return int(removed) == 1

    async def remove_by_channel(self, channel_id: str) -> bool:
        removed = await self._dequeue_by_channel(self._redis, self._key_list, [channel_id])
        return int(removed) == 1

    async def claim(self, request_id: str, now_ms: int) -> bool:
        return int(await self._claim(self._redis, self._key_list, [request_id, now_ms])) == 1

    async def release(self, request_id: str) -> bool:
        return int(await self._release(self._redis, self._key_list, [request_id])) == 1

    async def commit(self, request_ids: Sequence[str]) -> bool:
        return int(await self._commit(self._redis, self._key_list, list(request_ids))) == 1

    async def release_stale(self, cutoff_ms: int) -> int:
        return int(await self._release_stale(self._redis, [self._keys.queue_claims], [cutoff_ms]))

    async def _fetch(self) -> List[Tuple[str, Optional[str]]]:
        channels = await self._redis.zrange(self._keys.queue, 0, -1)
        if not channels:
            return []
        claimed = set(await self._redis.hkeys(self._keys.queue_claims))
        channels = [channel for channel in channels if channel not in claimed]
        if not channels:
            return []
        payloads = await self._redis.hmget(self._keys.queue_payloads, channels)
        return list(zip(channels, payloads))

    async def get_pending(self) -> List[CallRequest]:
        pending = []
        for channel_id, payload in await self._fetch():
            try:
                if payload is None:
                    raise CorruptedPayloadError("Missing queue payload")
                pending.append(decode_request(payload))
            except CorruptedPayloadError as e:
                logger.warning("corrupted_queue_entry_purged", channel_id=channel_id, error=str(e))
                await self._purge(self._redis, self._key_list, [channel_id, payload or ""])
        return pending

    async def get_by_channel(self, channel_id: str) -> Optional[CallRequest]:
        if not await self.contains(channel_id):
            return None
        payload = await self._redis.hget(self._keys.queue_payloads, channel_id)
        if payload is None:
            return None
        try:
            return decode_request(payload)
        except CorruptedPayloadError:
            await self._purge(self._redis, self._key_list, [channel_id, payload])
            return None

    async def contains(self, channel_id: str) -> bool:
        return await self._redis.zscore(self._keys.queue, channel_id) is not None

    async def length(self) -> int:
        return int(await self._redis.zcard(self._keys.queue))

    async def status(self, channel_id: str) -> Optional[QueueStatus]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zrank(self._keys.queue, channel_id)
            pipe.zcard(self._keys.queue)
            rank, size = await pipe.execute()
        if rank is None:
            return None
        return QueueStatus(position=int(rank) + 1, queue_length=int(size))

    async def reconcile(self) -> int:
        return int(await self._reconcile(self._redis, self._key_list, []))


__all__ = ["QueueStore", "InMemoryQueueStore", "RedisQueueStore"]
