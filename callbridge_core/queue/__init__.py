"""Distributed wait queue."""

from callbridge_core.queue.manager import QueueManager
from callbridge_core.queue.store import InMemoryQueueStore, QueueStore, RedisQueueStore

__all__ = ["QueueManager", "QueueStore", "InMemoryQueueStore", "RedisQueueStore"]
