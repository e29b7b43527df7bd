"""Unit tests for call state, cleanup and durable history."""

import asyncio

import pytest
import pytest_asyncio

from callbridge_core.calls.base import (
    ActiveCall,
    CallError,
    CallErrorCode,
    CallMessage,
    CallNotFoundError,
    CallParticipant,
    CallStatus,
    ParticipantAction,
)
from callbridge_core.core.event_bus import EventType
from callbridge_core.database import DatabaseManager
from callbridge_core.database.base import to_async_url
from callbridge_core.state import InMemoryCallStateStore, SqlAlchemyEndedCallRepository, StaleCallReaper
from callbridge_core.state.store import apply_message, apply_participant_change


@pytest.fixture
def make_call(make_request, clock):
    def factory(call_id: str = "call_1", first: int = 1, second: int = 2) -> ActiveCall:
        a = make_request(first)
        b = make_request(second)
        return ActiveCall(
            id=call_id,
            participants=[
                CallParticipant.from_request(a, joined_at=clock()),
                CallParticipant.from_request(b, joined_at=clock()),
            ],
            start_time=clock(),
            initiator_id=a.initiator_id,
        )
    return factory


def message(author_id: str, content: str, timestamp: int = 0) -> CallMessage:
    return CallMessage(author_id=author_id, author_username=author_id, content=content, timestamp=timestamp)


class TestMutations:
    """Tests for the pure call mutations."""

    def test_participant_join_and_leave(self, make_call):
        """Test users are added to and removed from their side."""
        call = make_call()

        apply_participant_change(call, "channel-1", "user-7", ParticipantAction.JOINED)
        assert call.participant("channel-1").users == {"user-1", "user-7"}

        apply_participant_change(call, "channel-1", "user-1", ParticipantAction.LEFT)
        assert call.participant("channel-1").users == {"user-7"}

    def test_participant_unknown_channel(self, make_call):
        """Test changes for a channel outside the call are rejected."""
        with pytest.raises(CallError) as exc_info:
            apply_participant_change(make_call(), "channel-9", "user-1", ParticipantAction.JOINED)

        assert exc_info.value.code == CallErrorCode.CHANNEL_NOT_IN_CALL

    def test_message_counted_by_author(self, make_call):
        """Test a message without a channel is counted for its author's side."""
        call = make_call()

        apply_message(call, message("user-2", "hi"))

        assert call.participant("channel-2").message_count == 1
        assert call.participant("channel-1").message_count == 0
        assert [m.content for m in call.messages] == ["hi"]


class TestInMemoryCallStateStore:
    """Tests for the in-process state store."""

    @pytest.mark.asyncio
    async def test_channel_in_one_call(self, state_store, make_call):
        """Test a channel cannot join a second call."""
        assert await state_store.create_call(make_call("call_1", 1, 2)) is True
        assert await state_store.create_call(make_call("call_2", 2, 3)) is False

    @pytest.mark.asyncio
    async def test_channel_free_after_end(self, state_store, make_call):
        """Test ending a call frees both channels."""
        await state_store.create_call(make_call("call_1", 1, 2))
        await state_store.end_call("call_1", "hangup")

        assert await state_store.get_active_call_by_channel("channel-1") is None
        assert await state_store.create_call(make_call("call_2", 2, 3)) is True

    @pytest.mark.asyncio
    async def test_end_call_once(self, state_store, repository, make_call, clock):
        """Test only one concurrent end_call receives the ended call."""
        await state_store.create_call(make_call())
        clock.advance(90)

        results = await asyncio.gather(*(state_store.end_call("call_1", "hangup") for _ in range(4)))

        ended = [r for r in results if r is not None]
        assert len(ended) == 1
        assert ended[0].status == CallStatus.ENDED
        assert ended[0].end_reason == "hangup"
        assert ended[0].duration_ms() == 90000
        assert await repository.count() == 1

    @pytest.mark.asyncio
    async def test_update_after_end_fails(self, state_store, make_call):
        """Test an ended call cannot be modified."""
        await state_store.create_call(make_call())
        await state_store.end_call("call_1", "hangup")

        with pytest.raises(CallNotFoundError):
            await state_store.update_call_participant("call_1", "channel-1", "user-5", ParticipantAction.JOINED)
        with pytest.raises(CallNotFoundError):
            await state_store.add_call_message("call_1", message("user-1", "late"))

    @pytest.mark.asyncio
    async def test_messages_in_arrival_order(self, state_store, make_call):
        """Test the transcript keeps arrival order."""
        await state_store.create_call(make_call())

        for i in range(3):
            await state_store.add_call_message("call_1", message("user-1", f"m{i}", i), channel_id="channel-1")

        call = await state_store.get_call("call_1")
        assert [m.content for m in call.messages] == ["m0", "m1", "m2"]
        assert call.participant("channel-1").message_count == 3

    @pytest.mark.asyncio
    async def test_ended_copy_expires(self, state_store, make_call, clock):
        """Test the hot ended copy is only kept for the retention window."""
        await state_store.create_call(make_call())
        await state_store.end_call("call_1", "hangup")

        assert await state_store.get_ended_call("call_1") is not None
        clock.advance(1801)
        assert await state_store.get_ended_call("call_1") is None

    @pytest.mark.asyncio
    async def test_flagged_call_kept_longer(self, state_store, make_call, clock):
        """Test a call reported before ending survives the normal window."""
        await state_store.create_call(make_call())
        assert await state_store.flag_for_review("call_1") is True
        await state_store.end_call("call_1", "hangup")

        clock.advance(1801)
        kept = await state_store.get_ended_call("call_1")
        assert kept is not None
        assert kept.flagged_for_review is True

    @pytest.mark.asyncio
    async def test_corrupted_record_purged(self, state_store, make_call):
        """Test an undecodable call is removed with its mappings."""
        await state_store.create_call(make_call())
        state_store._calls["call_1"] = "{broken"

        assert await state_store.get_active_call_by_channel("channel-1") is None
        assert state_store._channels == {}

    @pytest.mark.asyncio
    async def test_state_stats(self, state_store, make_call, clock):
        """Test aggregate statistics over active calls."""
        await state_store.create_call(make_call("call_1", 1, 2))
        clock.advance(60)
        await state_store.create_call(make_call("call_2", 3, 4))
        clock.advance(60)

        stats = await state_store.get_state_stats()

        assert stats["active_calls_count"] == 2
        assert stats["total_participants"] == 4
        assert stats["average_call_duration"] == 90000


class TestStaleCallReaper:
    """Tests for ending calls past the maximum duration."""

    @pytest.mark.asyncio
    async def test_reaps_only_old_calls(self, state_store, bus, notifier, make_call, clock):
        """Test calls past the limit end with reason timeout."""
        reaper = StaleCallReaper(state_store, bus, notifier=notifier, max_call_duration_seconds=3600, clock=clock)
        await state_store.create_call(make_call("call_old", 1, 2))
        clock.advance(3000)
        await state_store.create_call(make_call("call_new", 3, 4))
        clock.advance(601)

        reaped = await reaper.reap()

        assert [c.id for c in reaped] == ["call_old"]
        assert reaped[0].end_reason == "timeout"
        assert await state_store.get_call("call_new") is not None
        assert notifier.kinds_for("channel-1") == ["ended"]
        assert notifier.kinds_for("channel-2") == ["ended"]
        ended_events = bus.get_history(EventType.CALL_ENDED)
        assert [e.data["call_id"] for e in ended_events] == ["call_old"]


class TestSqlAlchemyEndedCallRepository:
    """Tests for durable call history on SQLite."""

    @pytest_asyncio.fixture
    async def database(self, tmp_path):
        db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'calls.db'}")
        await db.create_all()
        yield db
        await db.close()

    @pytest.mark.asyncio
    async def test_save_and_get(self, database, make_call, clock):
        """Test an ended call round-trips through the database."""
        repository = SqlAlchemyEndedCallRepository(database)
        call = make_call()
        apply_message(call, message("user-1", "hello", clock()), channel_id="channel-1")
        ended = call.ended("hangup", clock() + 5000)

        await repository.save(ended)
        loaded = await repository.get("call_1")

        assert loaded == ended
        assert loaded.participant("channel-1").users == {"user-1"}

    @pytest.mark.asyncio
    async def test_save_is_idempotent(self, database, make_call, clock):
        """Test saving the same call twice keeps one row."""
        repository = SqlAlchemyEndedCallRepository(database)
        ended = make_call().ended("hangup", clock())

        await repository.save(ended)
        await repository.save(ended)

        assert await repository.count() == 1

    @pytest.mark.asyncio
    async def test_list_and_prune(self, database, make_call, clock):
        """Test per-channel history and retention pruning."""
        repository = SqlAlchemyEndedCallRepository(database)
        await repository.save(make_call("call_a", 1, 2).ended("hangup", clock()))
        await repository.save(make_call("call_b", 1, 3).ended("skip", clock() + 1000))
        await repository.save(make_call("call_c", 4, 5).ended("hangup", clock() + 2000))

        history = await repository.list_for_channel("channel-1")
        assert [c.id for c in history] == ["call_b", "call_a"]

        assert await repository.delete_older_than(clock() + 1500) == 2
        assert await repository.count() == 1

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        """Test a reachable database reports healthy."""
        assert await database.health_check() is True

    def test_sync_urls_use_async_drivers(self):
        """Test plain URLs are mapped to their async drivers."""
        assert to_async_url("sqlite:///calls.db") == "sqlite+aiosqlite:///calls.db"
        assert to_async_url("postgresql://db/calls") == "postgresql+asyncpg://db/calls"
        assert to_async_url("sqlite+aiosqlite:///calls.db") == "sqlite+aiosqlite:///calls.db"

    @pytest.mark.asyncio
    async def test_missing_call(self, database):
        """Test unknown ids return None."""
        repository = SqlAlchemyEndedCallRepository(database)

        assert await repository.get("call_missing") is None
