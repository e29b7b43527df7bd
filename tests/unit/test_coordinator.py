"""Unit tests for leader election."""

from unittest.mock import AsyncMock

import pytest

from callbridge_core.coordination import Coordinator, InMemoryLeaseBackend, LeadershipState
from callbridge_core.coordination.lease import LeaseBackend
from callbridge_core.core.event_bus import EventType


@pytest.fixture
def lease_backend(clock) -> InMemoryLeaseBackend:
    return InMemoryLeaseBackend(clock=clock)


def make_coordinator(backend, clock, instance_id: str, bus=None) -> Coordinator:
    return Coordinator(
        backend,
        instance_id,
        bus=bus,
        lease_ttl_seconds=30,
        renew_interval_seconds=10,
        clock=clock,
    )


class TestInMemoryLeaseBackend:
    """Tests for the in-process lease."""

    @pytest.mark.asyncio
    async def test_lease_expires(self, lease_backend, clock):
        """Test an unrenewed lease becomes free."""
        assert await lease_backend.acquire("worker-a", 30000) is True
        clock.advance(31)

        assert await lease_backend.get_holder() is None
        assert await lease_backend.acquire("worker-b", 30000) is True

    @pytest.mark.asyncio
    async def test_renew_requires_ownership(self, lease_backend):
        """Test renewal fails once another worker holds the lease."""
        await lease_backend.acquire("worker-a", 30000)

        assert await lease_backend.renew("worker-a", 30000) is True
        assert await lease_backend.renew("worker-b", 30000) is False


class TestCoordinator:
    """Tests for the leadership state machine."""

    @pytest.mark.asyncio
    async def test_single_leader(self, lease_backend, clock):
        """Test only one of two workers becomes leader."""
        first = make_coordinator(lease_backend, clock, "worker-a")
        second = make_coordinator(lease_backend, clock, "worker-b")

        assert await first.step() == LeadershipState.LEADER
        assert await second.step() == LeadershipState.FOLLOWER
        assert first.is_leader() is True
        assert second.is_leader() is False

    @pytest.mark.asyncio
    async def test_leadership_lapses_locally(self, lease_backend, clock):
        """Test a leader that cannot renew stops acting as leader on its own clock."""
        coordinator = make_coordinator(lease_backend, clock, "worker-a")
        await coordinator.step()

        clock.advance(30)

        assert coordinator.state == LeadershipState.LEADER
        assert coordinator.is_leader() is False

    @pytest.mark.asyncio
    async def test_renewal_keeps_leadership(self, lease_backend, clock):
        """Test regular renewals extend the local deadline."""
        coordinator = make_coordinator(lease_backend, clock, "worker-a")
        await coordinator.step()

        for _ in range(5):
            clock.advance(10)
            assert await coordinator.step() == LeadershipState.LEADER

        assert coordinator.is_leader() is True

    @pytest.mark.asyncio
    async def test_failover(self, lease_backend, clock, bus):
        """Test a follower takes over once the leader's lease expires."""
        leader = make_coordinator(lease_backend, clock, "worker-a", bus=bus)
        follower = make_coordinator(lease_backend, clock, "worker-b", bus=bus)
        await leader.step()
        await follower.step()

        clock.advance(31)
        assert await follower.step() == LeadershipState.LEADER
        assert await leader.step() == LeadershipState.FOLLOWER

        lost = bus.get_history(EventType.LEADER_LOST)
        assert [e.data["instance_id"] for e in lost] == ["worker-a"]
        assert lost[0].data["reason"] == "renewal_failed"
        elected = bus.get_history(EventType.LEADER_ELECTED)
        assert [e.data["instance_id"] for e in elected] == ["worker-a", "worker-b"]

    @pytest.mark.asyncio
    async def test_backend_errors_mean_follower(self, clock):
        """Test an unreachable store never yields leadership."""
        backend = AsyncMock(spec=LeaseBackend)
        backend.acquire.side_effect = ConnectionError("redis down")
        coordinator = make_coordinator(backend, clock, "worker-a")

        assert await coordinator.step() == LeadershipState.FOLLOWER
        assert coordinator.is_leader() is False

    @pytest.mark.asyncio
    async def test_stop_releases_lease(self, lease_backend, clock):
        """Test a graceful shutdown hands the lease back immediately."""
        coordinator = make_coordinator(lease_backend, clock, "worker-a")
        await coordinator.step()
        await coordinator.start()

        await coordinator.stop()

        assert await lease_backend.get_holder() is None
        assert coordinator.state == LeadershipState.FOLLOWER
        assert coordinator.is_leader() is False

    def test_get_status(self, lease_backend, clock):
        """Test status reporting before any election."""
        coordinator = make_coordinator(lease_backend, clock, "worker-a")

        assert coordinator.get_status() == {
            "instance_id": "worker-a",
            "state": "follower",
            "is_leader": False,
            "terms": 0,
        }
