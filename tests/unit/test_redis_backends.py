"""Unit tests for the Redis backends, run against fakeredis."""

import asyncio

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from callbridge_core.calls.base import (
    ActiveCall,
    AlreadyQueuedError,
    CallMessage,
    ChannelInCallError,
    CallNotFoundError,
    CallParticipant,
    ParticipantAction,
    QueueFullError,
    QueueStatus,
)
from callbridge_core.coordination import RedisLeaseBackend
from callbridge_core.core.redis import KeySpace
from callbridge_core.matching import RedisRecentMatchCache
from callbridge_core.queue import RedisQueueStore
from callbridge_core.state import InMemoryEndedCallRepository, RedisCallStateStore


@pytest_asyncio.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def keys() -> KeySpace:
    return KeySpace("test")


def build_call(make_request, call_id: str = "call_1", first: int = 1, second: int = 2) -> ActiveCall:
    a = make_request(first)
    b = make_request(second)
    return ActiveCall(
        id=call_id,
        participants=[
            CallParticipant.from_request(a, joined_at=a.timestamp),
            CallParticipant.from_request(b, joined_at=b.timestamp),
        ],
        start_time=a.timestamp,
        initiator_id=a.initiator_id,
    )


class TestRedisQueueStore:
    """Tests for the Redis queue scripts."""

    @pytest.mark.asyncio
    async def test_add_and_order(self, redis_client, keys, make_request):
        """Test positions and pending order come from the sorted set."""
        store = RedisQueueStore(redis_client, keys)
        first = make_request(1)
        second = make_request(2)

        assert await store.add(second, score=200, ttl_ms=60000, capacity=0) == QueueStatus(1, 1)
        assert await store.add(first, score=100, ttl_ms=60000, capacity=0) == QueueStatus(1, 2)

        pending = await store.get_pending()
        assert [r.id for r in pending] == [first.id, second.id]
        assert pending[0] == first

    @pytest.mark.asyncio
    async def test_add_sets_expiry(self, redis_client, keys, make_request):
        """Test queue keys expire when nothing refreshes them."""
        store = RedisQueueStore(redis_client, keys)
        await store.add(make_request(1), score=1, ttl_ms=60000, capacity=0)

        for key in (keys.queue, keys.queue_payloads, keys.queue_ids):
            ttl = await redis_client.pttl(key)
            assert 0 < ttl <= 60000

    @pytest.mark.asyncio
    async def test_duplicate_and_capacity(self, redis_client, keys, make_request):
        """Test enqueue rejections."""
        store = RedisQueueStore(redis_client, keys)
        await store.add(make_request(1), score=1, ttl_ms=60000, capacity=1)

        with pytest.raises(AlreadyQueuedError):
            await store.add(make_request(1), score=2, ttl_ms=60000, capacity=0)
        with pytest.raises(QueueFullError):
            await store.add(make_request(2), score=2, ttl_ms=60000, capacity=1)

    @pytest.mark.asyncio
    async def test_concurrent_dequeue_single_winner(self, redis_client, keys, make_request):
        """Test only one of many concurrent removals claims the request."""
        store = RedisQueueStore(redis_client, keys)
        request = make_request(1)
        await store.add(request, score=1, ttl_ms=60000, capacity=0)

        results = await asyncio.gather(*(store.remove_by_id(request.id) for _ in range(5)))

        assert results.count(True) == 1
        assert await store.length() == 0
        assert await redis_client.hgetall(keys.queue_ids) == {}

    @pytest.mark.asyncio
    async def test_remove_by_channel(self, redis_client, keys, make_request):
        """Test cancelling clears every index."""
        store = RedisQueueStore(redis_client, keys)
        request = make_request(1)
        await store.add(request, score=1, ttl_ms=60000, capacity=0)

        assert await store.remove_by_channel(request.channel_id) is True
        assert await store.remove_by_channel(request.channel_id) is False
        assert await store.remove_by_id(request.id) is False
        assert await store.status(request.channel_id) is None

    @pytest.mark.asyncio
    async def test_corrupted_entry_purged(self, redis_client, keys, make_request):
        """Test a bad payload is removed from all three keys."""
        store = RedisQueueStore(redis_client, keys)
        good = make_request(1)
        bad = make_request(2)
        await store.add(good, score=1, ttl_ms=60000, capacity=0)
        await store.add(bad, score=2, ttl_ms=60000, capacity=0)
        await redis_client.hset(keys.queue_payloads, bad.channel_id, "garbage")

        pending = await store.get_pending()

        assert [r.id for r in pending] == [good.id]
        assert await store.contains(bad.channel_id) is False
        assert await redis_client.hget(keys.queue_ids, f"id:{bad.id}") is None

    @pytest.mark.asyncio
    async def test_reconcile(self, redis_client, keys, make_request):
        """Test orphans in either direction are fixed."""
        store = RedisQueueStore(redis_client, keys)
        request = make_request(1)
        await store.add(request, score=1, ttl_ms=60000, capacity=0)
        await redis_client.hdel(keys.queue_payloads, request.channel_id)
        await redis_client.hset(keys.queue_payloads, "channel-ghost", "{}")

        fixed = await store.reconcile()

        assert fixed >= 2
        assert await store.length() == 0
        assert await redis_client.hlen(keys.queue_payloads) == 0
        assert await redis_client.hlen(keys.queue_ids) == 0

    @pytest.mark.asyncio
    async def test_channel_in_live_call_rejected(self, redis_client, keys, make_request, clock):
        """Test enqueue checks the channel's call mapping in the same script."""
        store = RedisQueueStore(redis_client, keys)
        state = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)
        await state.create_call(call)

        with pytest.raises(ChannelInCallError):
            await store.add(make_request(1), score=1, ttl_ms=60000, capacity=0)
        assert await store.length() == 0

        await state.end_call(call.id, "hangup")
        await store.add(make_request(1), score=1, ttl_ms=60000, capacity=0)
        assert await store.contains("channel-1") is True

    @pytest.mark.asyncio
    async def test_claim_release_commit(self, redis_client, keys, make_request):
        """Test claimed requests keep their slot and are removed together on commit."""
        store = RedisQueueStore(redis_client, keys)
        first = make_request(1)
        second = make_request(2)
        await store.add(first, score=1, ttl_ms=60000, capacity=0)
        await store.add(second, score=2, ttl_ms=60000, capacity=0)

        assert await store.claim(first.id, 1000) is True
        assert await store.claim(first.id, 1000) is False
        assert [r.id for r in await store.get_pending()] == [second.id]
        assert await store.status(first.channel_id) == QueueStatus(1, 2)
        assert await store.commit([first.id, second.id]) is False

        assert await store.release(first.id) is True
        assert [r.id for r in await store.get_pending()] == [first.id, second.id]

        assert await store.claim(first.id, 1000) is True
        assert await store.claim(second.id, 1000) is True
        assert await store.commit([first.id, second.id]) is True
        assert await store.length() == 0
        assert await redis_client.hgetall(keys.queue_ids) == {}
        assert await redis_client.hgetall(keys.queue_claims) == {}

    @pytest.mark.asyncio
    async def test_cancel_beats_claim(self, redis_client, keys, make_request):
        """Test a cancelled request cannot be released back by a matcher."""
        store = RedisQueueStore(redis_client, keys)
        request = make_request(1)
        await store.add(request, score=1, ttl_ms=60000, capacity=0)
        await store.claim(request.id, 1000)

        assert await store.remove_by_channel(request.channel_id) is True
        assert await store.release(request.id) is False
        assert await store.contains(request.channel_id) is False
        assert await redis_client.hlen(keys.queue_claims) == 0

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, redis_client, keys, make_request):
        """Test only one of many concurrent claims succeeds."""
        store = RedisQueueStore(redis_client, keys)
        request = make_request(1)
        await store.add(request, score=1, ttl_ms=60000, capacity=0)

        results = await asyncio.gather(*(store.claim(request.id, 1000) for _ in range(5)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, redis_client, keys, make_request):
        """Test only claims older than the cutoff are released."""
        store = RedisQueueStore(redis_client, keys)
        old = make_request(1)
        recent = make_request(2)
        await store.add(old, score=1, ttl_ms=60000, capacity=0)
        await store.add(recent, score=2, ttl_ms=60000, capacity=0)
        await store.claim(old.id, 1000)
        await store.claim(recent.id, 5000)

        assert await store.release_stale(2000) == 1
        assert [r.id for r in await store.get_pending()] == [old.id]


class TestRedisLeaseBackend:
    """Tests for the leader lease."""

    @pytest.mark.asyncio
    async def test_single_holder(self, redis_client, keys):
        """Test only one holder owns the lease."""
        backend = RedisLeaseBackend(redis_client, keys)

        assert await backend.acquire("worker-a", 30000) is True
        assert await backend.acquire("worker-b", 30000) is False
        assert await backend.get_holder() == "worker-a"

    @pytest.mark.asyncio
    async def test_acquire_is_reentrant(self, redis_client, keys):
        """Test the holder can acquire again and extends the lease."""
        backend = RedisLeaseBackend(redis_client, keys)
        await backend.acquire("worker-a", 1000)

        assert await backend.acquire("worker-a", 30000) is True
        assert await redis_client.pttl(keys.leader_lease) > 1000

    @pytest.mark.asyncio
    async def test_renew_and_release_check_holder(self, redis_client, keys):
        """Test other workers cannot renew or release the lease."""
        backend = RedisLeaseBackend(redis_client, keys)
        await backend.acquire("worker-a", 30000)

        assert await backend.renew("worker-b", 30000) is False
        assert await backend.release("worker-b") is False
        assert await backend.release("worker-a") is True
        assert await backend.get_holder() is None
        assert await backend.acquire("worker-b", 30000) is True


class TestRedisRecentMatchCache:
    """Tests for the recent match cooldown."""

    @pytest.mark.asyncio
    async def test_pair_is_unordered(self, redis_client, keys):
        """Test the cooldown applies in both directions."""
        cache = RedisRecentMatchCache(redis_client, keys, cooldown_seconds=60)
        await cache.record_match("user-2", "user-1")

        assert await cache.has_recent_match("user-1", "user-2") is True
        assert await cache.has_recent_match("user-1", "user-3") is False
        assert 0 < await redis_client.ttl(keys.recent_match("user-1", "user-2")) <= 60


class TestRedisCallStateStore:
    """Tests for call state in Redis."""

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, redis_client, keys, make_request, clock):
        """Test a call is reachable by id and by both channels."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)

        assert await store.create_call(call) is True

        assert (await store.get_call(call.id)).id == call.id
        assert (await store.get_active_call_by_channel("channel-1")).id == call.id
        assert (await store.get_active_call_by_channel("channel-2")).id == call.id
        assert [c.id for c in await store.get_all_active_calls()] == [call.id]

    @pytest.mark.asyncio
    async def test_create_rejects_busy_channel(self, redis_client, keys, make_request, clock):
        """Test a channel cannot be in two calls."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        await store.create_call(build_call(make_request, "call_1", 1, 2))

        assert await store.create_call(build_call(make_request, "call_2", 2, 3)) is False
        assert await store.get_active_call_by_channel("channel-3") is None

    @pytest.mark.asyncio
    async def test_stale_mapping_overwritten(self, redis_client, keys, make_request, clock):
        """Test a mapping to a missing call does not block a new call."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        await redis_client.hset(keys.channel_calls, "channel-1", "call_gone")

        assert await store.create_call(build_call(make_request)) is True

    @pytest.mark.asyncio
    async def test_participant_and_message_updates(self, redis_client, keys, make_request, clock):
        """Test read-modify-write updates are persisted."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)
        await store.create_call(call)

        await store.update_call_participant(call.id, "channel-1", "user-9", ParticipantAction.JOINED)
        await store.add_call_message(
            call.id,
            CallMessage(author_id="user-9", author_username="nine", content="hello", timestamp=clock()),
            channel_id="channel-1",
        )

        stored = await store.get_call(call.id)
        assert stored.participant("channel-1").users == {"user-1", "user-9"}
        assert stored.participant("channel-1").message_count == 1
        assert stored.messages[0].content == "hello"

    @pytest.mark.asyncio
    async def test_concurrent_messages_all_kept(self, redis_client, keys, make_request, clock):
        """Test concurrent appends do not lose messages."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)
        await store.create_call(call)

        await asyncio.gather(*(
            store.add_call_message(
                call.id,
                CallMessage(author_id="user-1", author_username="one", content=str(i), timestamp=clock()),
            )
            for i in range(5)
        ))

        stored = await store.get_call(call.id)
        assert sorted(m.content for m in stored.messages) == sorted(str(i) for i in range(5))
        assert stored.participant("channel-1").message_count == 5

    @pytest.mark.asyncio
    async def test_end_call_single_winner(self, redis_client, keys, make_request, clock):
        """Test concurrent end_call returns the ended call exactly once."""
        repository = InMemoryEndedCallRepository()
        store = RedisCallStateStore(redis_client, keys, repository=repository, clock=clock)
        call = build_call(make_request)
        await store.create_call(call)

        results = await asyncio.gather(*(store.end_call(call.id, "hangup") for _ in range(5)))

        ended = [r for r in results if r is not None]
        assert len(ended) == 1
        assert await repository.count() == 1
        assert await store.get_call(call.id) is None
        assert await store.get_active_call_by_channel("channel-1") is None
        assert await redis_client.scard(keys.active_call_ids) == 0

    @pytest.mark.asyncio
    async def test_ended_copy_ttl_depends_on_review_flag(self, redis_client, keys, make_request, clock):
        """Test flagged calls are kept for the review period."""
        store = RedisCallStateStore(
            redis_client,
            keys,
            ended_call_ttl_seconds=1800,
            reviewed_call_ttl_seconds=172800,
            clock=clock,
        )
        plain = build_call(make_request, "call_1", 1, 2)
        flagged = build_call(make_request, "call_2", 3, 4)
        await store.create_call(plain)
        await store.create_call(flagged)
        assert await store.flag_for_review(flagged.id) is True

        await store.end_call(plain.id, "hangup")
        await store.end_call(flagged.id, "hangup")

        assert await redis_client.ttl(keys.ended_call(plain.id)) <= 1800
        assert await redis_client.ttl(keys.ended_call(flagged.id)) > 1800
        assert (await store.get_ended_call(flagged.id)).flagged_for_review is True

    @pytest.mark.asyncio
    async def test_flag_after_end_extends_ttl(self, redis_client, keys, make_request, clock):
        """Test reporting an ended call keeps it for the review period."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)
        await store.create_call(call)
        await store.end_call(call.id, "hangup")

        assert await store.flag_for_review(call.id) is True
        assert await redis_client.ttl(keys.ended_call(call.id)) > 1800
        assert await store.flag_for_review("call_unknown") is False

    @pytest.mark.asyncio
    async def test_update_inactive_call_raises(self, redis_client, keys):
        """Test updates to unknown calls fail."""
        store = RedisCallStateStore(redis_client, keys)

        with pytest.raises(CallNotFoundError):
            await store.update_call_participant("call_missing", "channel-1", "user-1", ParticipantAction.LEFT)

    @pytest.mark.asyncio
    async def test_corrupted_call_purged(self, redis_client, keys, make_request, clock):
        """Test an unreadable call record is removed with its mappings."""
        store = RedisCallStateStore(redis_client, keys, clock=clock)
        call = build_call(make_request)
        await store.create_call(call)
        await redis_client.set(keys.active_call(call.id), "corrupt")

        assert await store.get_active_call_by_channel("channel-1") is None
        assert await redis_client.hgetall(keys.channel_calls) == {}
        assert await redis_client.exists(keys.active_call(call.id)) == 0
