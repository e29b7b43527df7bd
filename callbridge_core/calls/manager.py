"""
Call Manager
============

Facade consumed by the command layer. Every command returns a ``CallResult``;
rejected commands and store outages never raise past this class.

Usage:
    manager = build_call_manager(settings, redis=client)
    await manager.start()

    result = await manager.initiate_call(
        ChannelInfo(channel_id="123", guild_id="456", webhook_url="https://..."),
        initiator_id="789",
    )
    if result.status == "matched":
        ...
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from redis.exceptions import RedisError

from callbridge_core.calls.base import (
    ActiveCall,
    AlreadyQueuedError,
    CallError,
    CallErrorCode,
    CallMessage,
    CallRequest,
    CallResult,
    ChannelInCallError,
    ChannelInfo,
    EndReason,
    ParticipantAction,
    now_ms,
)
from callbridge_core.calls.metrics import CallMetrics
from callbridge_core.calls.notifications import LoggingNotifier, Notifier
from callbridge_core.coordination.coordinator import Coordinator
from callbridge_core.core.event_bus import EventBus, EventType
from callbridge_core.core.lifecycle import Component
from callbridge_core.core.logging import LogContext
from callbridge_core.matching.engine import MatchingEngine
from callbridge_core.queue.manager import QueueManager
from callbridge_core.state.repository import EndedCallRepository
from callbridge_core.state.store import CallStateStore

logger = structlog.get_logger(__name__)

# Failures that mean the shared store could not be reached
TRANSIENT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

ERROR_MESSAGES = {
    CallErrorCode.CHANNEL_ALREADY_IN_CALL: "This channel is already in an active call. Hang up first.",
    CallErrorCode.CHANNEL_ALREADY_IN_QUEUE: "This channel is already in the call queue. Please wait for a match.",
    CallErrorCode.QUEUE_FULL: "The call queue is full right now. Please try again later.",
    CallErrorCode.CALL_NOT_FOUND: "That call has already ended.",
    CallErrorCode.CHANNEL_NOT_IN_CALL: "This channel isn't in an active call.",
    CallErrorCode.STORE_UNAVAILABLE: "An error occurred while processing the call. Please try again.",
    CallErrorCode.CORRUPTED_DATA: "An error occurred while processing the call. Please try again.",
}


def format_duration(duration_ms: int) -> str:
    minutes, seconds = divmod(duration_ms // 1000, 60)
    return f"{minutes}m {seconds}s"


class CallManager(Component):
    """Entry point for starting, ending and relaying calls."""

    def __init__(
        self,
        bus: EventBus,
        coordinator: Coordinator,
        queue: QueueManager,
        state_store: CallStateStore,
        matching_engine: MatchingEngine,
        repository: Optional[EndedCallRepository] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[CallMetrics] = None,
        background: Optional[List[Component]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._bus = bus
        self._coordinator = coordinator
        self._queue = queue
        self._state = state_store
        self._engine = matching_engine
        self._repository = repository
        self._notifier = notifier or LoggingNotifier()
        self._metrics = metrics or CallMetrics()
        self._clock = clock
        self._running = False

        # Dependency order; stopped in reverse
        self._components: List[Component] = [
            bus,
            coordinator,
            queue,
            *(background or []),
            matching_engine,
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return

        for component in self._components:
            await component.start()
        self._running = True
        logger.info("call_manager_started", instance_id=self._coordinator.instance_id)

    async def stop(self) -> None:
        if not self._running:
            return

        for component in reversed(self._components):
            try:
                await component.stop()
            except Exception as e:
                logger.error("component_stop_failed", component=type(component).__name__, error=str(e))
        self._running = False
        logger.info("call_manager_stopped", instance_id=self._coordinator.instance_id)

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Command Execution
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        command: str,
        operation: Callable[..., Awaitable[CallResult]],
        *args: Any,
    ) -> CallResult:
        with self._metrics.time_command(command) as outcome:
            try:
                result = await operation(*args)
            except CallError as e:
                logger.info("call_command_rejected", command=command, code=e.code.value, error=str(e))
                result = CallResult(
                    success=False,
                    message=ERROR_MESSAGES.get(e.code, str(e)),
                    status="error",
                    error_code=e.code,
                )
            except TRANSIENT_ERRORS as e:
                logger.error("call_command_failed", command=command, error=str(e))
                result = CallResult(
                    success=False,
                    message=ERROR_MESSAGES[CallErrorCode.STORE_UNAVAILABLE],
                    status="error",
                    error_code=CallErrorCode.STORE_UNAVAILABLE,
                )
            outcome["success"] = result.success
        return result

    @staticmethod
    def _rejected(code: CallErrorCode) -> CallResult:
        return CallResult(
            success=False,
            message=ERROR_MESSAGES[code],
            status="error",
            error_code=code,
        )

    async def _notify(self, method: str, channel_id: str, *args: Any) -> None:
        try:
            await getattr(self._notifier, method)(channel_id, *args)
        except Exception as e:
            logger.warning("notification_failed", method=method, channel_id=channel_id, error=str(e))

    async def _announce_end(self, call: ActiveCall) -> None:
        await self._bus.emit(
            EventType.CALL_ENDED,
            "call_manager",
            {
                "call_id": call.id,
                "reason": call.end_reason,
                "channels": call.channel_ids,
                "duration_ms": call.duration_ms(),
                "message_count": len(call.messages),
            },
            call_id=call.id,
        )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def initiate_call(
        self,
        channel: ChannelInfo,
        initiator_id: str,
        priority: int = 0,
    ) -> CallResult:
        """Queue the channel for a call; reports ``matched`` when paired immediately."""
        return await self._execute("initiate_call", self._initiate, channel, initiator_id, priority)

    async def _initiate(self, channel: ChannelInfo, initiator_id: str, priority: int) -> CallResult:
        with LogContext(channel_id=channel.channel_id):
            if await self._state.has_active_call(channel.channel_id):
                raise ChannelInCallError(f"Channel {channel.channel_id} is already in a call")
            if await self._queue.is_in_queue(channel.channel_id):
                raise AlreadyQueuedError(f"Channel {channel.channel_id} is already queued")

            # The queue store re-checks both conditions atomically on insert.
            request = CallRequest.create(channel, initiator_id, priority=priority, timestamp=self._clock())
            status = await self._queue.enqueue(request)

            call = await self._state.get_active_call_by_channel(channel.channel_id)
            if call is not None:
                return CallResult(
                    success=True,
                    message="Match found! You're now connected.",
                    call_id=call.id,
                    status="matched",
                )

            status = await self._queue.get_queue_status(channel.channel_id) or status
            await self._notify("notify_call_queued", channel.channel_id, status)
            return CallResult(
                success=True,
                message=(
                    f"Looking for a match... You're #{status.position} in queue "
                    f"({status.queue_length} total)."
                ),
                status="queued",
            )

    async def hangup_call(self, channel_id: str) -> CallResult:
        """Leave the queue, or end the channel's active call."""
        return await self._execute("hangup_call", self._hangup, channel_id)

    async def _hangup(self, channel_id: str) -> CallResult:
        with LogContext(channel_id=channel_id):
            call = await self._state.get_active_call_by_channel(channel_id)
            if call is None:
                if await self._queue.dequeue_by_channel(channel_id):
                    return CallResult(
                        success=True,
                        message="Removed from queue. You're no longer waiting for a call.",
                        status="cancelled",
                    )
                # The request may have been matched while we were cancelling it.
                call = await self._state.get_active_call_by_channel(channel_id)
                if call is None:
                    return self._rejected(CallErrorCode.CHANNEL_NOT_IN_CALL)

            ended = await self._state.end_call(call.id, EndReason.HANGUP.value)
            if ended is None:
                return self._rejected(CallErrorCode.CALL_NOT_FOUND)

            await self._announce_end(ended)
            for participant in ended.participants:
                await self._notify("notify_call_ended", participant.channel_id, ended)

            return CallResult(
                success=True,
                message=f"Call ended! Duration: {format_duration(ended.duration_ms())}.",
                call_id=ended.id,
                status="ended",
            )

    async def skip_call(self, channel_id: str, user_id: str) -> CallResult:
        """End the current call and immediately look for a new one."""
        return await self._execute("skip_call", self._skip, channel_id, user_id)

    async def _skip(self, channel_id: str, user_id: str) -> CallResult:
        with LogContext(channel_id=channel_id):
            call = await self._state.get_active_call_by_channel(channel_id)
            if call is None:
                return self._rejected(CallErrorCode.CHANNEL_NOT_IN_CALL)

            ended = await self._state.end_call(call.id, EndReason.SKIP.value)
            if ended is None:
                return self._rejected(CallErrorCode.CALL_NOT_FOUND)

            await self._announce_end(ended)
            await self._bus.emit(
                EventType.CALL_SKIPPED,
                "call_manager",
                {"call_id": ended.id, "channel_id": channel_id, "user_id": user_id},
                call_id=ended.id,
                channel_id=channel_id,
            )
            for participant in ended.participants:
                if participant.channel_id == channel_id:
                    await self._notify("notify_call_skipped", channel_id, ended)
                else:
                    await self._notify("notify_call_ended", participant.channel_id, ended)

            own_side = ended.participant(channel_id)
            channel = ChannelInfo(
                channel_id=channel_id,
                guild_id=own_side.guild_id,
                webhook_url=own_side.webhook_url,
            )
            follow_up = await self._initiate(channel, user_id, 0)

            if not follow_up.success:
                return CallResult(
                    success=False,
                    message=f"Call ended but a new match could not be started: {follow_up.message}",
                    call_id=ended.id,
                    status="error",
                    error_code=follow_up.error_code,
                )
            if follow_up.status == "matched":
                return CallResult(
                    success=True,
                    message="Call skipped and new match found!",
                    call_id=follow_up.call_id,
                    status="matched",
                )
            return CallResult(
                success=True,
                message=f"Call skipped. {follow_up.message}",
                call_id=ended.id,
                status="skipped",
            )

    async def add_participant(self, channel_id: str, user_id: str) -> CallResult:
        return await self._execute("add_participant", self._add_participant, channel_id, user_id)

    async def _add_participant(self, channel_id: str, user_id: str) -> CallResult:
        call = await self._state.get_active_call_by_channel(channel_id)
        if call is None:
            return self._rejected(CallErrorCode.CHANNEL_NOT_IN_CALL)

        updated = await self._state.update_call_participant(
            call.id, channel_id, user_id, ParticipantAction.JOINED
        )
        await self._bus.emit(
            EventType.PARTICIPANT_JOINED,
            "call_manager",
            {"call_id": call.id, "channel_id": channel_id, "user_id": user_id},
            call_id=call.id,
            channel_id=channel_id,
        )
        other = updated.other_participant(channel_id)
        if other is not None:
            await self._notify("notify_participant_joined", other.channel_id, updated, user_id)

        return CallResult(success=True, message="Joined the call.", call_id=call.id)

    async def remove_participant(self, channel_id: str, user_id: str) -> CallResult:
        """Remove a user; ends the call when the channel's side has nobody left."""
        return await self._execute("remove_participant", self._remove_participant, channel_id, user_id)

    async def _remove_participant(self, channel_id: str, user_id: str) -> CallResult:
        call = await self._state.get_active_call_by_channel(channel_id)
        if call is None:
            return self._rejected(CallErrorCode.CHANNEL_NOT_IN_CALL)

        updated = await self._state.update_call_participant(
            call.id, channel_id, user_id, ParticipantAction.LEFT
        )
        await self._bus.emit(
            EventType.PARTICIPANT_LEFT,
            "call_manager",
            {"call_id": call.id, "channel_id": channel_id, "user_id": user_id},
            call_id=call.id,
            channel_id=channel_id,
        )
        other = updated.other_participant(channel_id)
        if other is not None:
            await self._notify("notify_participant_left", other.channel_id, updated, user_id)

        side = updated.participant(channel_id)
        if side is not None and side.users:
            return CallResult(success=True, message="Left the call.", call_id=call.id)

        ended = await self._state.end_call(call.id, EndReason.PARTICIPANT_LEFT.value)
        if ended is None:
            return CallResult(success=True, message="Left the call.", call_id=call.id, status="ended")

        await self._announce_end(ended)
        for participant in ended.participants:
            await self._notify("notify_call_ended", participant.channel_id, ended)

        return CallResult(
            success=True,
            message="Everyone left, so the call has ended.",
            call_id=ended.id,
            status="ended",
        )

    async def update_call_message(
        self,
        channel_id: str,
        user_id: str,
        username: str,
        content: str,
        attachment_url: Optional[str] = None,
    ) -> CallResult:
        """Record a relayed message against the channel's call."""
        return await self._execute(
            "update_call_message",
            self._update_call_message,
            channel_id,
            user_id,
            username,
            content,
            attachment_url,
        )

    async def _update_call_message(
        self,
        channel_id: str,
        user_id: str,
        username: str,
        content: str,
        attachment_url: Optional[str],
    ) -> CallResult:
        call = await self._state.get_active_call_by_channel(channel_id)
        if call is None:
            return self._rejected(CallErrorCode.CHANNEL_NOT_IN_CALL)

        message = CallMessage(
            author_id=user_id,
            author_username=username,
            content=content,
            timestamp=self._clock(),
            attachment_url=attachment_url,
        )
        updated = await self._state.add_call_message(call.id, message, channel_id=channel_id)
        await self._bus.emit(
            EventType.CALL_MESSAGE,
            "call_manager",
            {"call_id": call.id, "channel_id": channel_id, "author_id": user_id},
            call_id=call.id,
            channel_id=channel_id,
        )
        return CallResult(
            success=True,
            message=f"Message recorded ({len(updated.messages)} in call).",
            call_id=call.id,
        )

    async def flag_call_for_review(self, call_id: str) -> CallResult:
        """Keep a reported call's transcript for the review period."""
        return await self._execute("flag_call_for_review", self._flag_call_for_review, call_id)

    async def _flag_call_for_review(self, call_id: str) -> CallResult:
        if not await self._state.flag_for_review(call_id):
            return self._rejected(CallErrorCode.CALL_NOT_FOUND)
        return CallResult(success=True, message="Call flagged for review.", call_id=call_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_active_call(self, channel_id: str) -> Optional[ActiveCall]:
        try:
            return await self._state.get_active_call_by_channel(channel_id)
        except TRANSIENT_ERRORS as e:
            logger.error("active_call_lookup_failed", channel_id=channel_id, error=str(e))
            return None

    async def get_ended_call_data(self, call_id: str) -> Optional[ActiveCall]:
        """Ended call from the hot store, falling back to durable storage."""
        try:
            call = await self._state.get_ended_call(call_id)
        except TRANSIENT_ERRORS as e:
            logger.warning("ended_call_hot_lookup_failed", call_id=call_id, error=str(e))
            call = None

        if call is not None or self._repository is None:
            return call
        return await self._repository.get(call_id)

    async def get_distributed_stats(self) -> Dict[str, Any]:
        state_stats = await self._state.get_state_stats()
        queue_stats = await self._queue.get_queue_stats()
        self._metrics.set_active_calls(state_stats["active_calls_count"])
        self._metrics.set_queue_length(queue_stats["queue_length"])

        return {
            "cluster": {
                **self._coordinator.get_status(),
                "active_calls_count": state_stats["active_calls_count"],
            },
            "global": {
                **state_stats,
                **queue_stats,
            },
            "performance": {
                **await self._engine.get_matching_stats(),
                **self._metrics.get_stats(),
                "event_bus": self._bus.get_metrics(),
            },
        }


__all__ = ["CallManager", "format_duration"]
