"""Periodic termination of calls that ran past the maximum duration."""

from __future__ import annotations

from typing import Callable, List, Optional

from callbridge_core.calls.base import ActiveCall, EndReason, now_ms
from callbridge_core.calls.notifications import Notifier
from callbridge_core.core.event_bus import EventBus, EventType
from callbridge_core.core.lifecycle import PeriodicComponent
from callbridge_core.state.store import CallStateStore


class StaleCallReaper(PeriodicComponent):
    """Ends calls older than ``max_call_duration_seconds`` with reason ``timeout``."""

    def __init__(
        self,
        store: CallStateStore,
        bus: EventBus,
        notifier: Optional[Notifier] = None,
        max_call_duration_seconds: int = 14400,
        interval_seconds: float = 300.0,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(interval_seconds, name="stale_call_reaper")
        self._store = store
        self._bus = bus
        self._notifier = notifier
        self._max_duration_ms = max_call_duration_seconds * 1000
        self._clock = clock

    async def reap(self) -> List[ActiveCall]:
        """End every call past the maximum duration; returns the calls this worker ended."""
        now = self._clock()
        reaped = []

        for call in await self._store.get_all_active_calls():
            if now - call.start_time <= self._max_duration_ms:
                continue

            ended = await self._store.end_call(call.id, EndReason.TIMEOUT.value)
            if ended is None:
                continue
            reaped.append(ended)

            await self._bus.emit(
                EventType.CALL_ENDED,
                "stale_call_reaper",
                {"call_id": ended.id, "reason": ended.end_reason, "channels": ended.channel_ids},
                call_id=ended.id,
            )
            if self._notifier is not None:
                for channel_id in ended.channel_ids:
                    try:
                        await self._notifier.notify_call_ended(channel_id, ended)
                    except Exception as e:
                        self._logger.warning("notification_failed", call_id=ended.id, error=str(e))

        if reaped:
            self._logger.info("stale_calls_ended", count=len(reaped))
        return reaped

    async def _tick(self) -> None:
        await self.reap()


__all__ = ["StaleCallReaper"]
