"""
Coordinator
===========

Lease-based leader election. Exactly one worker in the cluster runs the
background matching sweep; this component decides which.

State machine:
    FOLLOWER  --lease observed free-->  CANDIDATE --acquired--> LEADER
    CANDIDATE --lease held elsewhere--> FOLLOWER
    LEADER    --renewal failed / local deadline passed--> FOLLOWER

``is_leader()`` never touches the network. It trusts the local lease
deadline, measured from before the acquire/renew call was sent, so a worker
stops acting as leader no later than the lease can expire in the store.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional

from callbridge_core.coordination.lease import LeaseBackend, monotonic_ms
from callbridge_core.core.event_bus import EventBus, EventType
from callbridge_core.core.lifecycle import PeriodicComponent


class LeadershipState(str, Enum):
    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"


class Coordinator(PeriodicComponent):
    """Leader election for one worker process."""

    def __init__(
        self,
        backend: LeaseBackend,
        instance_id: str,
        bus: Optional[EventBus] = None,
        lease_ttl_seconds: float = 30.0,
        renew_interval_seconds: float = 10.0,
        clock: Callable[[], int] = monotonic_ms,
    ):
        super().__init__(renew_interval_seconds, name="coordinator", run_immediately=True)
        self._backend = backend
        self._instance_id = instance_id
        self._bus = bus
        self._ttl_ms = int(lease_ttl_seconds * 1000)
        self._clock = clock
        self._state = LeadershipState.FOLLOWER
        self._deadline = 0
        self._terms = 0

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def state(self) -> LeadershipState:
        return self._state

    def is_leader(self) -> bool:
        """Cheap local check, safe to call on every sweep."""
        return self._state == LeadershipState.LEADER and self._clock() < self._deadline

    # -------------------------------------------------------------------------
    # Election
    # -------------------------------------------------------------------------

    async def step(self) -> LeadershipState:
        """Run one election round: renew when leading, otherwise try to acquire."""
        if self._state == LeadershipState.LEADER:
            await self._renew()
        else:
            await self._campaign()
        return self._state

    async def _campaign(self) -> None:
        self._state = LeadershipState.CANDIDATE
        sent_at = self._clock()
        try:
            acquired = await self._backend.acquire(self._instance_id, self._ttl_ms)
        except Exception as e:
            self._logger.warning("lease_acquire_failed", error=str(e))
            acquired = False

        if not acquired:
            self._state = LeadershipState.FOLLOWER
            return

        self._state = LeadershipState.LEADER
        self._deadline = sent_at + self._ttl_ms
        self._terms += 1
        self._logger.info("leader_elected", instance_id=self._instance_id, term=self._terms)
        await self._announce(EventType.LEADER_ELECTED)

    async def _renew(self) -> None:
        sent_at = self._clock()
        try:
            renewed = await self._backend.renew(self._instance_id, self._ttl_ms)
        except Exception as e:
            self._logger.warning("lease_renew_failed", error=str(e))
            renewed = False

        if renewed and sent_at < self._deadline:
            self._deadline = sent_at + self._ttl_ms
            return

        await self._demote("renewal_failed" if not renewed else "lease_expired")

    async def _demote(self, reason: str) -> None:
        self._state = LeadershipState.FOLLOWER
        self._deadline = 0
        self._logger.warning("leader_lost", instance_id=self._instance_id, reason=reason)
        await self._announce(EventType.LEADER_LOST, reason=reason)

    async def _announce(self, event_type: EventType, **data: Any) -> None:
        if self._bus is None or not self._bus.is_running:
            return
        try:
            await self._bus.emit(
                event_type,
                "coordinator",
                {"instance_id": self._instance_id, "term": self._terms, **data},
            )
        except Exception as e:
            self._logger.error("leadership_event_failed", error=str(e))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _tick(self) -> None:
        await self.step()

    async def _on_stop(self) -> None:
        if self._state != LeadershipState.LEADER:
            self._state = LeadershipState.FOLLOWER
            return

        try:
            await self._backend.release(self._instance_id)
        except Exception as e:
            self._logger.warning("lease_release_failed", error=str(e))
        await self._demote("shutdown")

    def get_status(self) -> Dict[str, Any]:
        return {
            "instance_id": self._instance_id,
            "state": self._state.value,
            "is_leader": self.is_leader(),
            "terms": self._terms,
        }


__all__ = ["Coordinator", "LeadershipState"]
