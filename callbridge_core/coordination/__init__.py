"""Cluster-wide leader election."""

from callbridge_core.coordination.coordinator import Coordinator, LeadershipState
from callbridge_core.coordination.lease import (
    InMemoryLeaseBackend,
    LeaseBackend,
    RedisLeaseBackend,
)

__all__ = [
    "Coordinator",
    "LeadershipState",
    "LeaseBackend",
    "InMemoryLeaseBackend",
    "RedisLeaseBackend",
]
