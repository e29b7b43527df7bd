"""
Event Bus
=========

Call lifecycle events shared between the components of one worker and, through
a transport, with every other worker in the cluster.

Each bus delivers what it emits to its own subscribers straight away and hands
the event to the transport. Events that come back from the transport are
delivered only on the other workers: ``metadata.origin`` names the emitting
instance. A handler that fails or times out is dead-lettered and never raises
into the code that emitted the event.

Usage:
    bus = EventBus(transport=RedisTransport(client), instance_id="worker-1")
    await bus.start()

    @bus.on(EventType.CALL_ENDED)
    async def on_ended(event: Event):
        ...

    await bus.emit(EventType.CALL_ENDED, "call_manager", {"call_id": call.id}, call_id=call.id)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Set,
    Union,
)
from uuid import uuid4

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class EventType(str, Enum):
    CALL_QUEUED = "call.queued"
    CALL_DEQUEUED = "call.dequeued"
    CALL_MATCHED = "call.matched"
    CALL_ENDED = "call.ended"
    CALL_SKIPPED = "call.skipped"
    CALL_MESSAGE = "call.message"
    PARTICIPANT_JOINED = "call.participant.joined"
    PARTICIPANT_LEFT = "call.participant.left"

    LEADER_ELECTED = "coordinator.leader_elected"
    LEADER_LOST = "coordinator.leader_lost"

    # Republished notifications for the command layer
    NOTIFICATION_QUEUED = "notification.call_queued"
    NOTIFICATION_MATCHED = "notification.call_matched"
    NOTIFICATION_ENDED = "notification.call_ended"
    NOTIFICATION_SKIPPED = "notification.call_skipped"
    NOTIFICATION_JOINED = "notification.participant_joined"
    NOTIFICATION_LEFT = "notification.participant_left"


def _type_name(event_type: Union[str, EventType]) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


# =============================================================================
# Events
# =============================================================================


@dataclass
class EventMetadata:
    event_id: str = field(default_factory=lambda: uuid4().hex)
    origin: Optional[str] = None
    call_id: Optional[str] = None
    channel_id: Optional[str] = None
    emitted_at: int = field(default_factory=_now_ms)


@dataclass
class Event:
    """Something that happened to a request or a call."""

    type: str
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: EventMetadata = field(default_factory=EventMetadata)

    @property
    def id(self) -> str:
        return self.metadata.event_id

    def serialize(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "source": self.source,
                "data": self.data,
                "metadata": asdict(self.metadata),
            },
            separators=(",", ":"),
        )

    @classmethod
    def deserialize(cls, raw: Union[bytes, str]) -> "Event":
        """
        Rebuild an event from its wire form.

        Raises:
            ValueError: not JSON, or not a JSON object
            KeyError: ``type`` or ``source`` is missing
            TypeError: unknown metadata fields
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("event payload must be a JSON object")

        return cls(
            type=payload["type"],
            source=payload["source"],
            data=payload.get("data") or {},
            metadata=EventMetadata(**(payload.get("metadata") or {})),
        )


@dataclass
class EventFilter:
    """Empty sets match everything."""

    event_types: Optional[Set[str]] = None
    sources: Optional[Set[str]] = None

    def matches(self, event: Event) -> bool:
        if self.event_types and event.type not in self.event_types:
            return False
        return not self.sources or event.source in self.sources


@dataclass
class Subscription:
    id: str
    name: str
    handler: EventHandler
    filter: EventFilter
    delivered: int = 0
    failed: int = 0


class DeadLetter(NamedTuple):
    event: Event
    error: BaseException
    failed_at: int


# =============================================================================
# Transports
# =============================================================================


class EventTransport(ABC):
    """Carries events between the buses of different workers."""

    @abstractmethod
    async def open(self, listener: EventHandler) -> str:
        """Start passing every published event to ``listener``; returns a listener id."""
        pass

    @abstractmethod
    async def close(self, listener_id: str) -> None:
        pass

    @abstractmethod
    async def publish(self, event: Event) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass


class InMemoryTransport(EventTransport):
    """
    Process-local transport.

    Buses that share one instance behave like workers on one Redis: each sees
    the events the others publish, asynchronously.
    """

    def __init__(self):
        self._listeners: Dict[str, EventHandler] = {}
        self._pending: Set[asyncio.Task] = set()

    async def open(self, listener: EventHandler) -> str:
        listener_id = f"memory-{uuid4().hex[:8]}"
        self._listeners[listener_id] = listener
        return listener_id

    async def close(self, listener_id: str) -> None:
        self._listeners.pop(listener_id, None)
        if not self._listeners:
            for task in self._pending:
                task.cancel()
            self._pending.clear()

    async def publish(self, event: Event) -> None:
        if not self._listeners:
            raise RuntimeError("No listeners attached to the transport")

        for listener in list(self._listeners.values()):
            task = asyncio.create_task(listener(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @property
    def is_connected(self) -> bool:
        return bool(self._listeners)


class RedisTransport(EventTransport):
    """
    Redis Pub/Sub transport; one instance per bus.

    Pub/Sub is fire-and-forget: a worker that is disconnected when an event is
    published never sees it.
    """

    def __init__(self, client: Any, prefix: str = "callbridge:events"):
        self._redis = client
        self._channel = prefix
        self._pubsub: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._listener_id: Optional[str] = None
        self._logger = logger.bind(channel=self._channel)

    async def open(self, listener: EventHandler) -> str:
        if self._listener_id is not None:
            raise RuntimeError("RedisTransport already has a listener")

        await self._redis.ping()
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._reader = asyncio.create_task(self._read(listener))
        self._listener_id = f"redis-{uuid4().hex[:8]}"
        self._logger.info("redis_transport_subscribed")
        return self._listener_id

    async def close(self, listener_id: str) -> None:
        if listener_id != self._listener_id:
            return

        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None

        for task in self._pending:
            task.cancel()
        self._pending.clear()

        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None

        self._listener_id = None
        self._logger.info("redis_transport_unsubscribed")

    async def publish(self, event: Event) -> None:
        if self._listener_id is None:
            raise RuntimeError("RedisTransport is not open")
        await self._redis.publish(self._channel, event.serialize())

    async def _read(self, listener: EventHandler) -> None:
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not message or message.get("type") != "message":
                continue

            try:
                event = Event.deserialize(message["data"])
            except (ValueError, KeyError, TypeError) as e:
                self._logger.warning("malformed_event_dropped", error=str(e))
                continue

            task = asyncio.create_task(listener(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @property
    def is_connected(self) -> bool:
        return self._listener_id is not None


# =============================================================================
# Bus
# =============================================================================


class EventBus:
    """
    Local dispatch plus cluster fan-out for call events.

    Handlers run under a timeout and a concurrency limit. ``emit`` with
    ``wait_for_delivery=True`` returns only after every local handler has
    finished, which lets a caller observe their side effects.
    """

    def __init__(
        self,
        transport: Optional[EventTransport] = None,
        instance_id: Optional[str] = None,
        history_size: int = 500,
        dead_letter_size: int = 500,
        max_concurrent_handlers: int = 100,
        handler_timeout: float = 30.0,
    ):
        self._transport = transport or InMemoryTransport()
        self._instance_id = instance_id or f"bus-{uuid4().hex[:8]}"
        self._handler_timeout = handler_timeout
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)

        self._subscriptions: Dict[str, Subscription] = {}
        self._listener_id: Optional[str] = None
        self._deliveries: Set[asyncio.Task] = set()
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_size)

        self._counts: Counter = Counter()
        self._handler_time_ms = 0.0
        self._logger = logger.bind(instance_id=self._instance_id)

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def is_running(self) -> bool:
        return self._listener_id is not None

    async def start(self) -> None:
        if self.is_running:
            return
        self._listener_id = await self._transport.open(self._on_remote_event)
        self._logger.info("event_bus_started")

    async def stop(self) -> None:
        if not self.is_running:
            return

        listener_id, self._listener_id = self._listener_id, None
        for task in self._deliveries:
            task.cancel()
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)

        await self._transport.close(listener_id)
        self._logger.info("event_bus_stopped")

    # -------------------------------------------------------------------------
    # Emitting
    # -------------------------------------------------------------------------

    async def emit(
        self,
        event_type: Union[str, EventType],
        source: str,
        data: Dict[str, Any],
        wait_for_delivery: bool = False,
        call_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Event:
        """Build an event stamped with this instance as origin, and publish it."""
        if not self.is_running:
            raise RuntimeError("Event bus is not running")

        event = Event(
            type=_type_name(event_type),
            source=source,
            data=data,
            metadata=EventMetadata(
                origin=self._instance_id,
                call_id=call_id,
                channel_id=channel_id,
            ),
        )
        self._history.append(event)
        self._counts["events_published"] += 1

        try:
            await self._transport.publish(event)
        except Exception as e:
            # Local subscribers still get the event.
            self._logger.error("event_fanout_failed", event_type=event.type, error=str(e))

        if wait_for_delivery:
            await self._dispatch(event)
        else:
            task = asyncio.create_task(self._dispatch(event))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)
        return event

    async def _on_remote_event(self, event: Event) -> None:
        if event.metadata.origin == self._instance_id or not self.is_running:
            return
        self._counts["events_received"] += 1
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        targets = [s for s in list(self._subscriptions.values()) if s.filter.matches(event)]
        for subscription in targets:
            await self._run_handler(subscription, event)
        if targets:
            self._counts["events_delivered"] += 1

    async def _run_handler(self, subscription: Subscription, event: Event) -> None:
        started = time.perf_counter()
        try:
            async with self._handler_slots:
                await asyncio.wait_for(subscription.handler(event), timeout=self._handler_timeout)
        except asyncio.TimeoutError as e:
            self._record_failure(subscription, event, e, "event_handler_timeout")
            return
        except Exception as e:
            self._record_failure(subscription, event, e, "event_handler_failed")
            return

        subscription.delivered += 1
        self._counts["handlers_invoked"] += 1
        self._handler_time_ms += (time.perf_counter() - started) * 1000

    def _record_failure(
        self,
        subscription: Subscription,
        event: Event,
        error: BaseException,
        log_event: str,
    ) -> None:
        subscription.failed += 1
        self._counts["handlers_failed"] += 1
        self._dead_letters.append(DeadLetter(event, error, _now_ms()))
        self._logger.error(
            log_event,
            subscriber=subscription.name,
            event_id=event.id,
            event_type=event.type,
            error=str(error) or type(error).__name__,
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[Union[str, EventType]]] = None,
        filter: Optional[EventFilter] = None,
        name: Optional[str] = None,
    ) -> str:
        """Register ``handler``; ``filter`` takes precedence over ``event_types``."""
        if filter is None:
            types = {_type_name(t) for t in event_types} if event_types else None
            filter = EventFilter(event_types=types)

        subscription = Subscription(
            id=uuid4().hex,
            name=name or getattr(handler, "__qualname__", "handler"),
            handler=handler,
            filter=filter,
        )
        self._subscriptions[subscription.id] = subscription
        self._logger.debug("event_subscription_added", subscriber=subscription.name)
        return subscription.id

    def on(self, event_type: Union[str, EventType]) -> Callable[[EventHandler], EventHandler]:
        def register(handler: EventHandler) -> EventHandler:
            self.subscribe(handler, event_types={event_type}, name=handler.__name__)
            return handler
        return register

    def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until background deliveries of emitted events have finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    def get_history(
        self,
        event_type: Optional[Union[str, EventType]] = None,
        limit: int = 100,
    ) -> List[Event]:
        """Events emitted by this bus, oldest first."""
        events = list(self._history)
        if event_type is not None:
            wanted = _type_name(event_type)
            events = [e for e in events if e.type == wanted]
        return events[-limit:]

    def get_dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    def get_metrics(self) -> Dict[str, Any]:
        invoked = self._counts["handlers_invoked"]
        return {
            "events_published": self._counts["events_published"],
            "events_received": self._counts["events_received"],
            "events_delivered": self._counts["events_delivered"],
            "handlers_invoked": invoked,
            "handlers_failed": self._counts["handlers_failed"],
            "avg_handler_time_ms": round(self._handler_time_ms / invoked, 3) if invoked else 0.0,
            "subscriptions": len(self._subscriptions),
            "dead_letters": len(self._dead_letters),
            "pending_deliveries": len(self._deliveries),
        }


__all__ = [
    "EventType",
    "EventMetadata",
    "Event",
    "EventFilter",
    "DeadLetter",
    "EventTransport",
    "InMemoryTransport",
    "RedisTransport",
    "EventBus",
]
