"""Shared pytest fixtures for testing."""

import asyncio
from typing import Callable, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from callbridge_core.calls.base import ActiveCall, CallRequest, ChannelInfo, QueueStatus
from callbridge_core.calls.notifications import Notifier
from callbridge_core.config import Settings
from callbridge_core.core.event_bus import EventBus
from callbridge_core.queue import InMemoryQueueStore, QueueManager
from callbridge_core.state import InMemoryCallStateStore, InMemoryEndedCallRepository

START_MS = 1_700_000_000_000


class FakeClock:
    """Settable epoch-millisecond clock shared by the components under test."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class YieldingQueueStore(InMemoryQueueStore):
    """In-memory queue that suspends around every call, like a network round trip."""

    async def _round_trip(self, operation, *args):
        await asyncio.sleep(0)
        result = await operation(*args)
        await asyncio.sleep(0)
        return result

    async def add(self, request: CallRequest, score: int, ttl_ms: int, capacity: int) -> QueueStatus:
        return await self._round_trip(super().add, request, score, ttl_ms, capacity)

    async def remove_by_id(self, request_id: str) -> bool:
        return await self._round_trip(super().remove_by_id, request_id)

    async def remove_by_channel(self, channel_id: str) -> bool:
        return await self._round_trip(super().remove_by_channel, channel_id)

    async def claim(self, request_id: str, now_ms: int) -> bool:
        return await self._round_trip(super().claim, request_id, now_ms)

    async def release(self, request_id: str) -> bool:
        return await self._round_trip(super().release, request_id)

    async def commit(self, request_ids: Sequence[str]) -> bool:
        return await self._round_trip(super().commit, request_ids)

    async def get_pending(self) -> List[CallRequest]:
        return await self._round_trip(super().get_pending)


class RecordingNotifier(Notifier):
    """Collects notifications as (kind, channel_id, payload) tuples."""

    def __init__(self):
        self.sent: List[Tuple[str, str, object]] = []

    async def notify_call_queued(self, channel_id: str, status: QueueStatus) -> None:
        self.sent.append(("queued", channel_id, status))

    async def notify_call_matched(self, channel_id: str, call: ActiveCall) -> None:
        self.sent.append(("matched", channel_id, call))

    async def notify_call_ended(self, channel_id: str, call: ActiveCall) -> None:
        self.sent.append(("ended", channel_id, call))

    async def notify_call_skipped(self, channel_id: str, call: ActiveCall) -> None:
        self.sent.append(("skipped", channel_id, call))

    async def notify_participant_joined(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        self.sent.append(("joined", channel_id, user_id))

    async def notify_participant_left(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        self.sent.append(("left", channel_id, user_id))

    def kinds_for(self, channel_id: str) -> List[str]:
        return [kind for kind, channel, _ in self.sent if channel == channel_id]


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_channel() -> Callable[..., ChannelInfo]:
    def factory(n: int, guild_id: Optional[str] = None) -> ChannelInfo:
        return ChannelInfo(
            channel_id=f"channel-{n}",
            guild_id=guild_id or f"guild-{n}",
            webhook_url=f"https://hooks.example.com/{n}",
        )
    return factory


@pytest.fixture
def make_request(make_channel, clock) -> Callable[..., CallRequest]:
    def factory(
        n: int,
        initiator_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        timestamp: Optional[int] = None,
        priority: int = 0,
    ) -> CallRequest:
        return CallRequest.create(
            make_channel(n, guild_id),
            initiator_id or f"user-{n}",
            priority=priority,
            timestamp=clock() if timestamp is None else timestamp,
        )
    return factory


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, instance_id="worker-test")


@pytest_asyncio.fixture
async def bus():
    event_bus = EventBus(instance_id="worker-a")
    await event_bus.start()
    yield event_bus
    await event_bus.stop()


@pytest.fixture
def queue_store(state_store) -> InMemoryQueueStore:
    return InMemoryQueueStore(channel_in_call=state_store.has_active_call)


@pytest.fixture
def queue(queue_store, bus, clock) -> QueueManager:
    return QueueManager(queue_store, bus, clock=clock)


@pytest.fixture
def repository() -> InMemoryEndedCallRepository:
    return InMemoryEndedCallRepository()


@pytest.fixture
def state_store(repository, clock) -> InMemoryCallStateStore:
    return InMemoryCallStateStore(repository=repository, clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def yielding_queue(state_store, bus, clock) -> QueueManager:
    store = YieldingQueueStore(channel_in_call=state_store.has_active_call)
    return QueueManager(store, bus, clock=clock)
