"""
Service composition.

Wires the queue, coordinator, matching engine and call state into a
``CallManager`` for one worker process. With a Redis client every shared
structure lives in Redis; without one, everything is in-process, which is
enough for a single worker or for tests.

Usage:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, ...)

    database = DatabaseManager(settings.database_url)
    await database.create_all()

    manager = build_call_manager(
        settings,
        redis=create_redis(settings.redis_url),
        database=database,
    )
    await manager.start()
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from callbridge_core.calls.manager import CallManager
from callbridge_core.calls.metrics import CallMetrics
from callbridge_core.calls.notifications import LoggingNotifier, Notifier
from callbridge_core.config import Settings, get_settings
from callbridge_core.coordination import Coordinator, InMemoryLeaseBackend, RedisLeaseBackend
from callbridge_core.core.event_bus import EventBus, InMemoryTransport, RedisTransport
from callbridge_core.core.redis import KeySpace
from callbridge_core.database import DatabaseManager
from callbridge_core.matching import (
    InMemoryRecentMatchCache,
    MatchingEngine,
    MatchRules,
    RedisRecentMatchCache,
)
from callbridge_core.queue import InMemoryQueueStore, QueueManager, RedisQueueStore
from callbridge_core.state import (
    InMemoryCallStateStore,
    InMemoryEndedCallRepository,
    RedisCallStateStore,
    SqlAlchemyEndedCallRepository,
    StaleCallReaper,
)

logger = structlog.get_logger(__name__)


def build_call_manager(
    settings: Optional[Settings] = None,
    redis: Optional[Any] = None,
    database: Optional[DatabaseManager] = None,
    notifier: Optional[Notifier] = None,
) -> CallManager:
    """Assemble every component for this worker and return the facade."""
    settings = settings or get_settings()
    keys = KeySpace(settings.key_prefix)
    notifier = notifier or LoggingNotifier()
    metrics = CallMetrics()

    if database is not None:
        repository = SqlAlchemyEndedCallRepository(database)
    else:
        repository = InMemoryEndedCallRepository()

    state_options = dict(
        repository=repository,
        ended_call_ttl_seconds=settings.ended_call_ttl_seconds,
        reviewed_call_ttl_seconds=settings.reviewed_call_ttl_seconds,
    )

    if redis is not None:
        transport = RedisTransport(redis, prefix=f"{settings.key_prefix}:events")
        queue_store = RedisQueueStore(redis, keys)
        lease_backend = RedisLeaseBackend(redis, keys)
        cooldown = RedisRecentMatchCache(
            redis, keys, cooldown_seconds=settings.recent_match_cooldown_seconds
        )
        state_store = RedisCallStateStore(redis, keys, **state_options)
    else:
        transport = InMemoryTransport()
        state_store = InMemoryCallStateStore(**state_options)
        queue_store = InMemoryQueueStore(channel_in_call=state_store.has_active_call)
        lease_backend = InMemoryLeaseBackend()
        cooldown = InMemoryRecentMatchCache(
            cooldown_seconds=settings.recent_match_cooldown_seconds
        )

    bus = EventBus(transport=transport, instance_id=settings.instance_id)

    coordinator = Coordinator(
        lease_backend,
        settings.instance_id,
        bus=bus,
        lease_ttl_seconds=settings.lease_ttl_seconds,
        renew_interval_seconds=settings.lease_renew_interval_seconds,
    )
    queue = QueueManager(
        queue_store,
        bus,
        queue_timeout_seconds=settings.queue_timeout_seconds,
        capacity=settings.queue_capacity,
        priority_weight_ms=settings.priority_weight_ms,
        cleanup_interval_seconds=settings.queue_cleanup_interval_seconds,
        claim_timeout_seconds=settings.queue_claim_timeout_seconds,
    )
    reaper = StaleCallReaper(
        state_store,
        bus,
        notifier=notifier,
        max_call_duration_seconds=settings.max_call_duration_seconds,
        interval_seconds=settings.state_cleanup_interval_seconds,
    )
    engine = MatchingEngine(
        queue,
        state_store,
        cooldown,
        coordinator,
        bus,
        rules=MatchRules.from_seconds(
            settings.max_age_difference_seconds,
            settings.age_grace_period_seconds,
        ),
        notifier=notifier,
        metrics=metrics,
        interval_seconds=settings.matching_interval_seconds,
    )

    logger.info(
        "call_manager_built",
        instance_id=settings.instance_id,
        backend="redis" if redis is not None else "memory",
        durable_history=database is not None,
    )

    return CallManager(
        bus=bus,
        coordinator=coordinator,
        queue=queue,
        state_store=state_store,
        matching_engine=engine,
        repository=repository,
        notifier=notifier,
        metrics=metrics,
        background=[reaper],
    )


__all__ = ["build_call_manager"]
