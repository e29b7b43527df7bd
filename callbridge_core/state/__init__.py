"""Active call state and durable call history."""

from callbridge_core.state.cleanup import StaleCallReaper
from callbridge_core.state.repository import (
    EndedCallRepository,
    InMemoryEndedCallRepository,
    SqlAlchemyEndedCallRepository,
)
from callbridge_core.state.store import (
    CallStateStore,
    InMemoryCallStateStore,
    RedisCallStateStore,
)

__all__ = [
    "CallStateStore",
    "InMemoryCallStateStore",
    "RedisCallStateStore",
    "EndedCallRepository",
    "InMemoryEndedCallRepository",
    "SqlAlchemyEndedCallRepository",
    "StaleCallReaper",
]
