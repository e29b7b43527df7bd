"""
Call notifications.

The core never talks to the chat platform itself. It tells a ``Notifier``
what happened to each channel, and the embedding application renders that
however it likes. Delivery is best-effort: callers log and swallow failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

from callbridge_core.calls.base import ActiveCall, QueueStatus
from callbridge_core.core.event_bus import EventBus, EventType

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Receives per-channel call notifications."""

    @abstractmethod
    async def notify_call_queued(self, channel_id: str, status: QueueStatus) -> None:
        pass

    @abstractmethod
    async def notify_call_matched(self, channel_id: str, call: ActiveCall) -> None:
        pass

    @abstractmethod
    async def notify_call_ended(self, channel_id: str, call: ActiveCall) -> None:
        pass

    @abstractmethod
    async def notify_call_skipped(self, channel_id: str, call: ActiveCall) -> None:
        pass

    @abstractmethod
    async def notify_participant_joined(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        pass

    @abstractmethod
    async def notify_participant_left(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default notifier: writes each notification to the log."""

    async def notify_call_queued(self, channel_id: str, status: QueueStatus) -> None:
        logger.info("notify_call_queued", channel_id=channel_id, position=status.position)

    async def notify_call_matched(self, channel_id: str, call: ActiveCall) -> None:
        logger.info("notify_call_matched", channel_id=channel_id, call_id=call.id)

    async def notify_call_ended(self, channel_id: str, call: ActiveCall) -> None:
        logger.info("notify_call_ended", channel_id=channel_id, call_id=call.id, reason=call.end_reason)

    async def notify_call_skipped(self, channel_id: str, call: ActiveCall) -> None:
        logger.info("notify_call_skipped", channel_id=channel_id, call_id=call.id)

    async def notify_participant_joined(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        logger.info("notify_participant_joined", channel_id=channel_id, call_id=call.id, user_id=user_id)

    async def notify_participant_left(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        logger.info("notify_participant_left", channel_id=channel_id, call_id=call.id, user_id=user_id)


class EventBusNotifier(Notifier):
    """
    Republishes notifications as ``notification.*`` events so another
    process, such as the one that owns the chat connection, can deliver them.
    """

    def __init__(self, bus: EventBus, source: str = "call_manager"):
        self._bus = bus
        self._source = source

    async def _emit(self, event_type: EventType, channel_id: str, call_id: Optional[str] = None, **data: Any) -> None:
        payload: Dict[str, Any] = {"channel_id": channel_id, "call_id": call_id, **data}
        await self._bus.emit(event_type, self._source, payload, call_id=call_id, channel_id=channel_id)

    async def notify_call_queued(self, channel_id: str, status: QueueStatus) -> None:
        await self._emit(
            EventType.NOTIFICATION_QUEUED,
            channel_id,
            position=status.position,
            queue_length=status.queue_length,
        )

    async def notify_call_matched(self, channel_id: str, call: ActiveCall) -> None:
        other = call.other_participant(channel_id)
        await self._emit(
            EventType.NOTIFICATION_MATCHED,
            channel_id,
            call.id,
            partner_guild_id=other.guild_id if other else None,
        )

    async def notify_call_ended(self, channel_id: str, call: ActiveCall) -> None:
        await self._emit(
            EventType.NOTIFICATION_ENDED,
            channel_id,
            call.id,
            reason=call.end_reason,
            duration_ms=call.duration_ms(),
        )

    async def notify_call_skipped(self, channel_id: str, call: ActiveCall) -> None:
        await self._emit(EventType.NOTIFICATION_SKIPPED, channel_id, call.id)

    async def notify_participant_joined(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        await self._emit(EventType.NOTIFICATION_JOINED, channel_id, call.id, user_id=user_id)

    async def notify_participant_left(self, channel_id: str, call: ActiveCall, user_id: str) -> None:
        await self._emit(EventType.NOTIFICATION_LEFT, channel_id, call.id, user_id=user_id)


__all__ = ["Notifier", "LoggingNotifier", "EventBusNotifier"]
