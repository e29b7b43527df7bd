"""
Queue Manager
=============

Per-process facade over the shared queue store. Owns the ordering score,
the queue timeout, the ``call.queued`` notification, the claim protocol used by
the matching engine and the periodic cleanup that purges expired entries,
releases abandoned claims and drops orphaned index entries.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from callbridge_core.calls.base import CallRequest, QueueStatus, now_ms
from callbridge_core.core.event_bus import EventBus, EventType
from callbridge_core.core.lifecycle import PeriodicComponent
from callbridge_core.queue.store import QueueStore


class QueueManager(PeriodicComponent):
    """
    Wait queue for channels looking for a call.

    Usage:
        manager = QueueManager(store, bus)
        await manager.start()
        status = await manager.enqueue(CallRequest.create(channel, user_id))
    """

    def __init__(
        self,
        store: QueueStore,
        bus: EventBus,
        queue_timeout_seconds: int = 1800,
        capacity: int = 1000,
        priority_weight_ms: int = 1000,
        cleanup_interval_seconds: float = 60.0,
        claim_timeout_seconds: float = 30.0,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(cleanup_interval_seconds, name="queue_manager")
        self._store = store
        self._bus = bus
        self._timeout_ms = queue_timeout_seconds * 1000
        self._capacity = capacity
        self._priority_weight_ms = priority_weight_ms
        self._claim_timeout_ms = int(claim_timeout_seconds * 1000)
        self._clock = clock

    # -------------------------------------------------------------------------
    # Queue Operations
    # -------------------------------------------------------------------------

    async def enqueue(self, request: CallRequest, notify: bool = True) -> QueueStatus:
        """
        Add a request to the queue.

        Args:
            request: The request to add
            notify: Publish ``call.queued`` so an immediate match is attempted

        Returns:
            The request's position in the queue

        Raises:
            AlreadyQueuedError: the channel already has a request
            ChannelInCallError: the channel is in a live call
            QueueFullError: the queue is at capacity
        """
        status = await self._store.add(
            request,
            score=request.score(self._priority_weight_ms),
            ttl_ms=self._timeout_ms,
            capacity=self._capacity,
        )

        self._logger.info(
            "request_enqueued",
            request_id=request.id,
            channel_id=request.channel_id,
            position=status.position,
            queue_length=status.queue_length,
        )

        if notify:
            await self._bus.emit(
                EventType.CALL_QUEUED,
                "queue_manager",
                {
                    "request_id": request.id,
                    "channel_id": request.channel_id,
                    "guild_id": request.guild_id,
                    "position": status.position,
                },
                wait_for_delivery=True,
                channel_id=request.channel_id,
            )

        return status

    async def dequeue(self, request_id: str) -> bool:
        """Remove a request by id. Returns False if it was already removed or matched."""
        removed = await self._store.remove_by_id(request_id)
        if removed:
            self._logger.debug("request_dequeued", request_id=request_id)
        return removed

    async def dequeue_by_channel(self, channel_id: str) -> bool:
        """Remove the channel's request, if any."""
        removed = await self._store.remove_by_channel(channel_id)
        if removed:
            self._logger.info("request_cancelled", channel_id=channel_id)
        return removed

    async def get_pending_requests(self) -> List[CallRequest]:
        """Requests in queue order; corrupted entries are dropped."""
        return await self._store.get_pending()

    async def get_request(self, channel_id: str) -> Optional[CallRequest]:
        return await self._store.get_by_channel(channel_id)

    async def is_in_queue(self, channel_id: str) -> bool:
        return await self._store.contains(channel_id)

    async def get_queue_length(self) -> int:
        return await self._store.length()

    async def get_queue_status(self, channel_id: str) -> Optional[QueueStatus]:
        return await self._store.status(channel_id)

    async def get_queue_stats(self) -> Dict[str, Any]:
        pending = await self._store.get_pending()
        now = self._clock()
        oldest = min((r.timestamp for r in pending), default=None)
        return {
            "queue_length": len(pending),
            "oldest_request_age_ms": now - oldest if oldest is not None else 0,
        }

    # -------------------------------------------------------------------------
    # Claims
    # -------------------------------------------------------------------------

    def order_key(self, request: CallRequest) -> Tuple[int, str]:
        """Queue order: ordering score, ties broken by request id."""
        return request.score(self._priority_weight_ms), request.id

    async def claim(self, request_id: str) -> bool:
        """Reserve a request for a match. False if it is gone or claimed elsewhere."""
        return await self._store.claim(request_id, self._clock())

    async def release(self, request_id: str) -> bool:
        """Give a claimed request its place back, unless it was cancelled meanwhile."""
        released = await self._store.release(request_id)
        if released:
            self._logger.debug("claim_released", request_id=request_id)
        return released

    async def commit(self, request_ids: Sequence[str]) -> bool:
        """Remove claimed requests together. False if any claim was lost."""
        return await self._store.commit(request_ids)

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def cleanup(self) -> Dict[str, int]:
        """Release abandoned claims, purge expired requests and orphaned index entries."""
        now = self._clock()
        released = await self._store.release_stale(now - self._claim_timeout_ms)
        expired = await self._store.remove_expired(now - self._timeout_ms)
        reconciled = await self._store.reconcile()

        if released or expired or reconciled:
            self._logger.info(
                "queue_cleanup_completed",
                released=released,
                expired=expired,
                reconciled=reconciled,
            )
        return {"released": released, "expired": expired, "reconciled": reconciled}

    async def _tick(self) -> None:
        await self.cleanup()


__all__ = ["QueueManager"]
