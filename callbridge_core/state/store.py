"""
Call State Store
================

Authoritative record of active calls. Exactly one of any number of
concurrent ``end_call`` invocations receives the ended call back, and only
that caller writes it to the durable repository.

Redis layout (prefix omitted):
    call:active:<id>   JSON record of an active call
    call:channels      hash, channel id -> call id
    call:active_ids    set of active call ids
    call:ended:<id>    JSON record of an ended call, kept for a limited time

Read-modify-write updates use WATCH/MULTI and retry on contention.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from redis.exceptions import WatchError

from callbridge_core.calls.base import (
    ActiveCall,
    CallError,
    CallErrorCode,
    CallMessage,
    CallNotFoundError,
    CorruptedPayloadError,
    ParticipantAction,
    StoreUnavailableError,
    now_ms,
)
from callbridge_core.calls.serialization import decode_call, encode_call
from callbridge_core.core.redis import KeySpace, LuaScript
from callbridge_core.state.repository import EndedCallRepository

logger = structlog.get_logger(__name__)

CallMutation = Callable[[ActiveCall], ActiveCall]


# =============================================================================
# Mutations
# =============================================================================


def apply_participant_change(
    call: ActiveCall,
    channel_id: str,
    user_id: str,
    action: ParticipantAction,
) -> ActiveCall:
    participant = call.participant(channel_id)
    if participant is None:
        raise CallError(
            f"Channel {channel_id} is not part of call {call.id}",
            code=CallErrorCode.CHANNEL_NOT_IN_CALL,
        )

    if action == ParticipantAction.JOINED:
        participant.users.add(user_id)
    else:
        participant.users.discard(user_id)
    return call


def apply_message(
    call: ActiveCall,
    message: CallMessage,
    channel_id: Optional[str] = None,
) -> ActiveCall:
    if channel_id is not None:
        origin = call.participant(channel_id)
        if origin is None:
            raise CallError(
                f"Channel {channel_id} is not part of call {call.id}",
                code=CallErrorCode.CHANNEL_NOT_IN_CALL,
            )
    else:
        origin = call.participant_for_user(message.author_id)

    call.messages.append(message)
    if origin is not None:
        origin.message_count += 1
    return call


def apply_review_flag(call: ActiveCall) -> ActiveCall:
    call.flagged_for_review = True
    return call


# =============================================================================
# Base Store
# =============================================================================


class CallStateStore(ABC):
    """Abstract base class for active call state."""

    def __init__(
        self,
        repository: Optional[EndedCallRepository] = None,
        ended_call_ttl_seconds: int = 1800,
        reviewed_call_ttl_seconds: int = 172800,
        clock: Callable[[], int] = now_ms,
    ):
        self._repository = repository
        self._ended_ttl = ended_call_ttl_seconds
        self._reviewed_ttl = reviewed_call_ttl_seconds
        self._clock = clock

    def _ttl_for(self, call: ActiveCall) -> int:
        return self._reviewed_ttl if call.flagged_for_review else self._ended_ttl

    # -------------------------------------------------------------------------
    # Backend Primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_call(self, call: ActiveCall) -> bool:
        """Register the call and both channel mappings. False if either channel is taken."""
        pass

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[ActiveCall]:
        pass

    @abstractmethod
    async def get_active_call_by_channel(self, channel_id: str) -> Optional[ActiveCall]:
        pass

    @abstractmethod
    async def get_all_active_calls(self) -> List[ActiveCall]:
        pass

    @abstractmethod
    async def get_ended_call(self, call_id: str) -> Optional[ActiveCall]:
        """Ended call from the hot store only."""
        pass

    @abstractmethod
    async def _mutate(self, call_id: str, mutation: CallMutation) -> ActiveCall:
        """Atomically apply ``mutation`` to an active call and store the result."""
        pass

    @abstractmethod
    async def _finalize(self, call_id: str, reason: str, end_time: int) -> Optional[ActiveCall]:
        """Atomically move an active call to the ended state."""
        pass

    @abstractmethod
    async def _extend_ended(self, call_id: str) -> bool:
        """Flag an already ended hot copy for review and extend its expiry."""
        pass

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def has_active_call(self, channel_id: str) -> bool:
        return await self.get_active_call_by_channel(channel_id) is not None

    async def update_call_participant(
        self,
        call_id: str,
        channel_id: str,
        user_id: str,
        action: ParticipantAction,
    ) -> ActiveCall:
        """
        Add or remove a user on one side of the call.

        Raises:
            CallNotFoundError: the call is not active
            CallError: the channel is not part of the call
        """
        action = ParticipantAction(action)
        call = await self._mutate(
            call_id,
            lambda c: apply_participant_change(c, channel_id, user_id, action),
        )
        logger.debug(
            "participant_updated",
            call_id=call_id,
            channel_id=channel_id,
            user_id=user_id,
            action=action.value,
        )
        return call

    async def add_call_message(
        self,
        call_id: str,
        message: CallMessage,
        channel_id: Optional[str] = None,
    ) -> ActiveCall:
        """Append a message and count it against the originating side."""
        return await self._mutate(call_id, lambda c: apply_message(c, message, channel_id))

    async def end_call(self, call_id: str, reason: str) -> Optional[ActiveCall]:
        """
        End an active call.

        Returns the ended call to exactly one caller; every other caller, and
        any call for an unknown id, gets None.
        """
        ended = await self._finalize(call_id, reason, self._clock())
        if ended is None:
            return None

        logger.info(
            "call_ended",
            call_id=call_id,
            reason=reason,
            duration_ms=ended.duration_ms(),
            messages=len(ended.messages),
        )

        if self._repository is not None:
            try:
                await self._repository.save(ended)
            except Exception as e:
                logger.error("ended_call_persist_failed", call_id=call_id, error=str(e))

        return ended

    async def flag_for_review(self, call_id: str) -> bool:
        """Keep the call's ended copy for the review period. False if the call is unknown."""
        try:
            await self._mutate(call_id, apply_review_flag)
            logger.info("call_flagged_for_review", call_id=call_id, state="active")
            return True
        except CallNotFoundError:
            pass

        flagged = await self._extend_ended(call_id)
        if flagged:
            logger.info("call_flagged_for_review", call_id=call_id, state="ended")
        return flagged

    async def get_state_stats(self) -> Dict[str, Any]:
        calls = await self.get_all_active_calls()
        now = self._clock()
        total_participants = sum(len(p.users) for c in calls for p in c.participants)
        total_duration = sum(c.duration_ms(now) for c in calls)
        return {
            "active_calls_count": len(calls),
            "total_participants": total_participants,
            "average_call_duration": total_duration / len(calls) if calls else 0.0,
        }


# =============================================================================
# In-Memory Backend
# =============================================================================


class InMemoryCallStateStore(CallStateStore):
    """In-memory state for development and tests.

    Records are kept encoded so the same corruption handling applies as in
    the Redis backend.
    """

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._calls: Dict[str, str] = {}
        self._channels: Dict[str, str] = {}
        self._ended: Dict[str, Tuple[str, int]] = {}
        self._lock = asyncio.Lock()

    def _purge(self, call_id: str) -> None:
        self._calls.pop(call_id, None)
        for channel_id, mapped in list(self._channels.items()):
            if mapped == call_id:
                del self._channels[channel_id]

    def _load(self, call_id: str) -> Optional[ActiveCall]:
        payload = self._calls.get(call_id)
        if payload is None:
            return None
        try:
            return decode_call(payload)
        except CorruptedPayloadError as e:
            logger.warning("corrupted_call_purged", call_id=call_id, error=str(e))
            self._purge(call_id)
            return None

    async def create_call(self, call: ActiveCall) -> bool:
        async with self._lock:
            for channel_id in call.channel_ids:
                mapped = self._channels.get(channel_id)
                if mapped is not None and mapped in self._calls:
                    logger.warning("call_create_rejected", call_id=call.id, channel_id=channel_id)
                    return False

            self._calls[call.id] = encode_call(call)
            for channel_id in call.channel_ids:
                self._channels[channel_id] = call.id
            return True

    async def get_call(self, call_id: str) -> Optional[ActiveCall]:
        async with self._lock:
            return self._load(call_id)

    async def get_active_call_by_channel(self, channel_id: str) -> Optional[ActiveCall]:
        async with self._lock:
            call_id = self._channels.get(channel_id)
            if call_id is None:
                return None
            call = self._load(call_id)
            if call is None:
                logger.warning("orphaned_channel_mapping_removed", channel_id=channel_id, call_id=call_id)
                self._channels.pop(channel_id, None)
            return call

    async def get_all_active_calls(self) -> List[ActiveCall]:
        async with self._lock:
            calls = []
            for call_id in list(self._calls):
                call = self._load(call_id)
                if call is not None:
                    calls.append(call)
            return calls

    async def get_ended_call(self, call_id: str) -> Optional[ActiveCall]:
        async with self._lock:
            entry = self._ended.get(call_id)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= self._clock():
                del self._ended[call_id]
                return None
            return decode_call(payload)

    async def _mutate(self, call_id: str, mutation: CallMutation) -> ActiveCall:
        async with self._lock:
            call = self._load(call_id)
            if call is None:
                raise CallNotFoundError(f"Call {call_id} is not active")
            updated = mutation(call)
            self._calls[call_id] = encode_call(updated)
            return updated

    async def _finalize(self, call_id: str, reason: str, end_time: int) -> Optional[ActiveCall]:
        async with self._lock:
            call = self._load(call_id)
            if call is None:
                return None
            ended = call.ended(reason, end_time)
            self._purge(call_id)
            self._ended[call_id] = (
                encode_call(ended),
                self._clock() + self._ttl_for(ended) * 1000,
            )
            return ended

    async def _extend_ended(self, call_id: str) -> bool:
        async with self._lock:
            entry = self._ended.get(call_id)
            if entry is None or entry[1] <= self._clock():
                return False
            call = replace(decode_call(entry[0]), flagged_for_review=True)
            self._ended[call_id] = (encode_call(call), self._clock() + self._reviewed_ttl * 1000)
            return True


# =============================================================================
# Redis Backend
# =============================================================================


class RedisCallStateStore(CallStateStore):
    """Call state shared by every worker through Redis."""

    # KEYS: channel map, active id set, call key
    # ARGV: call id, payload, active key prefix, channel ids...
    #
    # Keys of already mapped calls are built from the prefix inside the script,
    # so every key under the prefix must live on one node (single Redis or one
    # hash slot). Redis Cluster without a hash-tagged prefix is not supported.
    CREATE_SCRIPT = """
    for i = 4, #ARGV do
        local mapped = redis.call('HGET', KEYS[1], ARGV[i])
        if mapped and redis.call('EXISTS', ARGV[3] .. mapped) == 1 then
            return 0
        end
    end

    redis.call('SET', KEYS[3], ARGV[2])
    for i = 4, #ARGV do
        redis.call('HSET', KEYS[1], ARGV[i], ARGV[1])
    end
    redis.call('SADD', KEYS[2], ARGV[1])
    return 1
    """

    # KEYS: channel map
    # ARGV: channel id, call id
    DROP_MAPPING_SCRIPT = """
    if redis.call('HGET', KEYS[1], ARGV[1]) == ARGV[2] then
        return redis.call('HDEL', KEYS[1], ARGV[1])
    end
    return 0
    """

    # KEYS: channel map, active id set, call key
    # ARGV: call id
    PURGE_SCRIPT = """
    redis.call('DEL', KEYS[3])
    redis.call('SREM', KEYS[2], ARGV[1])
    local mappings = redis.call('HGETALL', KEYS[1])
    for i = 1, #mappings, 2 do
        if mappings[i + 1] == ARGV[1] then
            redis.call('HDEL', KEYS[1], mappings[i])
        end
    end
    return 1
    """

    def __init__(
        self,
        client,
        keys: Optional[KeySpace] = None,
        max_retries: int = 10,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._redis = client
        self._keys = keys or KeySpace()
        self._max_retries = max_retries
        self._create = LuaScript(self.CREATE_SCRIPT)
        self._drop_mapping = LuaScript(self.DROP_MAPPING_SCRIPT)
        self._purge_script = LuaScript(self.PURGE_SCRIPT)

    def _call_keys(self, call_id: str) -> List[str]:
        return [self._keys.channel_calls, self._keys.active_call_ids, self._keys.active_call(call_id)]

    async def _purge(self, call_id: str) -> None:
        await self._purge_script(self._redis, self._call_keys(call_id), [call_id])

    async def _decode_or_purge(self, call_id: str, payload: Optional[str]) -> Optional[ActiveCall]:
        if payload is None:
            return None
        try:
            return decode_call(payload)
        except CorruptedPayloadError as e:
            logger.warning("corrupted_call_purged", call_id=call_id, error=str(e))
            await self._purge(call_id)
            return None

    async def create_call(self, call: ActiveCall) -> bool:
        created = await self._create(
            self._redis,
            self._call_keys(call.id),
            [call.id, encode_call(call), self._keys.active_call_prefix, *call.channel_ids],
        )
        if not int(created):
            logger.warning("call_create_rejected", call_id=call.id, channels=call.channel_ids)
            return False
        return True

    async def get_call(self, call_id: str) -> Optional[ActiveCall]:
        payload = await self._redis.get(self._keys.active_call(call_id))
        return await self._decode_or_purge(call_id, payload)

    async def get_active_call_by_channel(self, channel_id: str) -> Optional[ActiveCall]:
        call_id = await self._redis.hget(self._keys.channel_calls, channel_id)
        if call_id is None:
            return None

        call = await self.get_call(call_id)
        if call is None:
            logger.warning("orphaned_channel_mapping_removed", channel_id=channel_id, call_id=call_id)
            await self._drop_mapping(self._redis, [self._keys.channel_calls], [channel_id, call_id])
        return call

    async def get_all_active_calls(self) -> List[ActiveCall]:
        call_ids = sorted(await self._redis.smembers(self._keys.active_call_ids))
        if not call_ids:
            return []

        payloads = await self._redis.mget([self._keys.active_call(cid) for cid in call_ids])
        calls = []
        for call_id, payload in zip(call_ids, payloads):
            if payload is None:
                await self._redis.srem(self._keys.active_call_ids, call_id)
                continue
            call = await self._decode_or_purge(call_id, payload)
            if call is not None:
                calls.append(call)
        return calls

    async def get_ended_call(self, call_id: str) -> Optional[ActiveCall]:
        payload = await self._redis.get(self._keys.ended_call(call_id))
        if payload is None:
            return None
        try:
            return decode_call(payload)
        except CorruptedPayloadError as e:
            logger.warning("corrupted_ended_call_dropped", call_id=call_id, error=str(e))
            await self._redis.delete(self._keys.ended_call(call_id))
            return None

    async def _mutate(self, call_id: str, mutation: CallMutation) -> ActiveCall:
        key = self._keys.active_call(call_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(self._max_retries):
                try:
                    await pipe.watch(key)
                    payload = await pipe.get(key)
                    if payload is None:
                        raise CallNotFoundError(f"Call {call_id} is not active")
                    try:
                        call = decode_call(payload)
                    except CorruptedPayloadError:
                        await pipe.unwatch()
                        await self._purge(call_id)
                        raise CallNotFoundError(f"Call {call_id} record was corrupted")

                    updated = mutation(call)
                    pipe.multi()
                    pipe.set(key, encode_call(updated))
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("call_update_conflict", call_id=call_id)
                    continue

        raise StoreUnavailableError(f"Too much contention updating call {call_id}")

    async def _finalize(self, call_id: str, reason: str, end_time: int) -> Optional[ActiveCall]:
        key = self._keys.active_call(call_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(self._max_retries):
                try:
                    await pipe.watch(key)
                    payload = await pipe.get(key)
                    if payload is None:
                        return None
                    try:
                        call = decode_call(payload)
                    except CorruptedPayloadError as e:
                        await pipe.unwatch()
                        logger.warning("corrupted_call_purged", call_id=call_id, error=str(e))
                        await self._purge(call_id)
                        return None

                    ended = call.ended(reason, end_time)
                    pipe.multi()
                    pipe.delete(key)
                    pipe.srem(self._keys.active_call_ids, call_id)
                    pipe.hdel(self._keys.channel_calls, *call.channel_ids)
                    pipe.set(self._keys.ended_call(call_id), encode_call(ended), ex=self._ttl_for(ended))
                    await pipe.execute()
                    return ended
                except WatchError:
                    continue

        raise StoreUnavailableError(f"Too much contention ending call {call_id}")

    async def _extend_ended(self, call_id: str) -> bool:
        key = self._keys.ended_call(call_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(self._max_retries):
                try:
                    await pipe.watch(key)
                    payload = await pipe.get(key)
                    if payload is None:
                        return False
                    try:
                        call = replace(decode_call(payload), flagged_for_review=True)
                    except CorruptedPayloadError:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, encode_call(call), ex=self._reviewed_ttl)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

        raise StoreUnavailableError(f"Too much contention flagging call {call_id}")


__all__ = [
    "CallStateStore",
    "InMemoryCallStateStore",
    "RedisCallStateStore",
    "apply_participant_change",
    "apply_message",
]
