"""
Matching Engine
===============

Pairs queued requests into calls.

Two triggers:
    - Immediate: every ``call.queued`` published by this worker attempts one
      match for the new request, on whichever worker received the command.
    - Sweep: a periodic pass over the whole queue, run only by the elected
      leader, pairs whatever the immediate attempts left behind.

Both requests of a pair are claimed in queue order, then removed together
in one commit that fails if either side was cancelled meanwhile. Two attempts
over the same pair contend on the same first claim, so exactly one of them
creates the call. A lost claim is released in place and never re-enqueued.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Set, Tuple

from callbridge_core.calls.base import (
    ActiveCall,
    CallParticipant,
    CallRequest,
    MatchResult,
    new_call_id,
    now_ms,
)
from callbridge_core.calls.metrics import CallMetrics
from callbridge_core.calls.notifications import Notifier
from callbridge_core.coordination.coordinator import Coordinator
from callbridge_core.core.event_bus import Event, EventBus, EventType
from callbridge_core.core.lifecycle import PeriodicComponent
from callbridge_core.matching.cooldown import RecentMatchCache
from callbridge_core.matching.rules import MatchRules, check_compatibility, check_static
from callbridge_core.queue.manager import QueueManager
from callbridge_core.state.store import CallStateStore


class MatchingEngine(PeriodicComponent):
    """Background and on-demand pairing of queued requests."""

    def __init__(
        self,
        queue: QueueManager,
        state_store: CallStateStore,
        cooldown: RecentMatchCache,
        coordinator: Coordinator,
        bus: EventBus,
        rules: Optional[MatchRules] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[CallMetrics] = None,
        interval_seconds: float = 1.0,
        stats_window: int = 100,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(interval_seconds, name="matching_engine")
        self._queue = queue
        self._state_store = state_store
        self._cooldown = cooldown
        self._coordinator = coordinator
        self._bus = bus
        self._rules = rules or MatchRules()
        self._notifier = notifier
        self._metrics = metrics
        self._clock = clock
        self._subscription: Optional[str] = None

        # Statistics
        self._match_times: Deque[float] = deque(maxlen=stats_window)
        self._total_attempts = 0
        self._successful_matches = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _on_start(self) -> None:
        self._subscription = self._bus.subscribe(
            handler=self._on_call_queued,
            event_types={EventType.CALL_QUEUED},
            name="matching_engine.immediate",
        )

    async def _on_stop(self) -> None:
        if self._subscription:
            self._bus.unsubscribe(self._subscription)
            self._subscription = None

    async def _on_call_queued(self, event: Event) -> None:
        # Only the worker that accepted the request tries the immediate match.
        if event.metadata.origin != self._bus.instance_id:
            return

        request = await self._queue.get_request(event.data["channel_id"])
        if request is None or request.id != event.data.get("request_id"):
            return
        await self.find_match(request)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    async def is_compatible(self, first: CallRequest, second: CallRequest) -> bool:
        return await self._rejection(first, second) is None

    async def _rejection(self, first: CallRequest, second: CallRequest) -> Optional[str]:
        # Cooldown is only consulted for pairs that pass the static rules
        recently_matched = False
        if check_static(first, second) is None:
            recently_matched = await self._cooldown.has_recent_match(
                first.initiator_id, second.initiator_id
            )
        rejection = check_compatibility(first, second, self._clock(), self._rules, recently_matched)
        return rejection.value if rejection else None

    async def _find_candidate(
        self,
        request: CallRequest,
        pending: Iterable[CallRequest],
        excluded: Set[str],
    ) -> Optional[CallRequest]:
        for candidate in pending:
            if candidate.id in excluded or candidate.id == request.id:
                continue
            rejection = await self._rejection(request, candidate)
            if rejection is None:
                return candidate
            self._logger.debug(
                "candidate_rejected",
                request_id=request.id,
                candidate_id=candidate.id,
                reason=rejection,
            )
        return None

    async def find_match(self, request: CallRequest) -> MatchResult:
        """
        Try to pair ``request`` with the first compatible request in queue order.

        Returns an unmatched result when the request is no longer queued, no
        compatible candidate exists, or another worker claimed either side first.
        """
        started = time.perf_counter()
        pending = await self._queue.get_pending_requests()
        if not any(p.id == request.id for p in pending):
            return MatchResult(matched=False)

        candidate = await self._find_candidate(request, pending, excluded=set())
        if candidate is None:
            self._record_attempt(False, started)
            return MatchResult(matched=False)

        return await self._claim_and_create(request, candidate, started, unavailable=set())

    async def _claim_pair(
        self,
        request: CallRequest,
        candidate: CallRequest,
        unavailable: Set[str],
    ) -> bool:
        # Pairs are always claimed in queue order.
        first, second = sorted((request, candidate), key=self._queue.order_key)
        if not await self._queue.claim(first.id):
            unavailable.add(first.id)
            return False
        if not await self._queue.claim(second.id):
            unavailable.add(second.id)
            await self._queue.release(first.id)
            return False
        return True

    async def _drop_requests_in_call(self, pair: Tuple[CallRequest, CallRequest], unavailable: Set[str]) -> bool:
        in_call = {r.id for r in pair if await self._state_store.has_active_call(r.channel_id)}
        if not in_call:
            return False

        for r in pair:
            if r.id in in_call:
                unavailable.add(r.id)
                await self._queue.dequeue(r.id)
                self._logger.warning("request_dropped_channel_in_call", request_id=r.id, channel_id=r.channel_id)
            else:
                await self._queue.release(r.id)
        return True

    async def _claim_and_create(
        self,
        request: CallRequest,
        candidate: CallRequest,
        started: float,
        unavailable: Set[str],
    ) -> MatchResult:
        """Claim both requests, remove them together and create the call.

        Ids of requests that turned out to be taken, cancelled or stale are
        added to ``unavailable``.
        """
        if not await self._claim_pair(request, candidate, unavailable):
            self._record_attempt(False, started)
            return MatchResult(matched=False)

        pair = (request, candidate)
        if await self._drop_requests_in_call(pair, unavailable):
            self._record_attempt(False, started)
            return MatchResult(matched=False)

        if not await self._queue.commit([request.id, candidate.id]):
            # One side was cancelled while claimed; the other keeps its place.
            for r in pair:
                if not await self._queue.release(r.id):
                    unavailable.add(r.id)
            self._record_attempt(False, started)
            return MatchResult(matched=False)

        now = self._clock()
        call = ActiveCall(
            id=new_call_id(),
            participants=[
                CallParticipant.from_request(request, joined_at=now),
                CallParticipant.from_request(candidate, joined_at=now),
            ],
            start_time=now,
            initiator_id=request.initiator_id,
        )

        if not await self._state_store.create_call(call):
            self._logger.error(
                "call_creation_rejected",
                call_id=call.id,
                channels=call.channel_ids,
            )
            self._record_attempt(False, started)
            return MatchResult(matched=False)

        try:
            await self._cooldown.record_match(request.initiator_id, candidate.initiator_id)
        except Exception as e:
            self._logger.warning("recent_match_record_failed", call_id=call.id, error=str(e))

        match_time = self._record_attempt(True, started)
        self._logger.info(
            "call_matched",
            call_id=call.id,
            channels=call.channel_ids,
            match_time_ms=round(match_time, 2),
        )

        await self._bus.emit(
            EventType.CALL_MATCHED,
            "matching_engine",
            {
                "call_id": call.id,
                "channels": call.channel_ids,
                "request_ids": [request.id, candidate.id],
                "match_time": match_time,
            },
            call_id=call.id,
        )
        await self._notify_matched(call)

        return MatchResult(
            matched=True,
            call_id=call.id,
            participants=call.participants,
            match_time=match_time,
        )

    async def _notify_matched(self, call: ActiveCall) -> None:
        if self._notifier is None:
            return
        for channel_id in call.channel_ids:
            try:
                await self._notifier.notify_call_matched(channel_id, call)
            except Exception as e:
                self._logger.warning("notification_failed", call_id=call.id, channel_id=channel_id, error=str(e))

    def _record_attempt(self, matched: bool, started: float) -> float:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._total_attempts += 1
        if matched:
            self._successful_matches += 1
            self._match_times.append(elapsed_ms)
        if self._metrics is not None:
            self._metrics.record_matching_time(elapsed_ms, matched=matched)
        return elapsed_ms

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def sweep(self) -> int:
        """Pair as many queued requests as possible. Returns the number of calls created."""
        pending = await self._queue.get_pending_requests()
        if self._metrics is not None:
            self._metrics.set_queue_length(len(pending))
        if len(pending) < 2:
            return 0

        claimed: Set[str] = set()
        created = 0

        for request in pending:
            if request.id in claimed:
                continue

            started = time.perf_counter()
            candidate = await self._find_candidate(request, pending, excluded=claimed)
            if candidate is None:
                continue

            result = await self._claim_and_create(request, candidate, started, unavailable=claimed)
            if result.matched:
                claimed.update((request.id, candidate.id))
                created += 1

        if created:
            self._logger.info("sweep_completed", calls_created=created, pending=len(pending))
        return created

    async def _tick(self) -> None:
        if not self._coordinator.is_leader():
            return
        await self.sweep()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_matching_stats(self) -> Dict[str, Any]:
        average = sum(self._match_times) / len(self._match_times) if self._match_times else 0.0
        return {
            "average_match_time": average,
            "success_rate": (
                self._successful_matches / self._total_attempts if self._total_attempts else 0.0
            ),
            "queue_length": await self._queue.get_queue_length(),
            "total_attempts": self._total_attempts,
            "successful_matches": self._successful_matches,
        }


__all__ = ["MatchingEngine"]
