"""
Ended call repository.

Durable home of calls after they leave the hot store. ``save`` is an
idempotent merge keyed by call id, so a retried finalization never writes a
second row.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog
from sqlalchemy import delete, func, or_, select

from callbridge_core.calls.base import ActiveCall
from callbridge_core.calls.serialization import call_from_dict, call_to_dict
from callbridge_core.database.base import DatabaseManager
from callbridge_core.state.models import EndedCallRecord

logger = structlog.get_logger(__name__)


class EndedCallRepository(ABC):
    """Abstract base class for durable call history."""

    @abstractmethod
    async def save(self, call: ActiveCall) -> None:
        pass

    @abstractmethod
    async def get(self, call_id: str) -> Optional[ActiveCall]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    async def list_for_channel(self, channel_id: str, limit: int = 20) -> List[ActiveCall]:
        """Most recent ended calls the channel took part in."""
        pass

    @abstractmethod
    async def delete_older_than(self, cutoff_ms: int) -> int:
        """Delete calls that ended before ``cutoff_ms``; returns the count."""
        pass


class InMemoryEndedCallRepository(EndedCallRepository):
    def __init__(self):
        self._calls: Dict[str, ActiveCall] = {}
        self._lock = asyncio.Lock()

    async def save(self, call: ActiveCall) -> None:
        async with self._lock:
            self._calls[call.id] = call

    async def get(self, call_id: str) -> Optional[ActiveCall]:
        return self._calls.get(call_id)

    async def count(self) -> int:
        return len(self._calls)

    async def list_for_channel(self, channel_id: str, limit: int = 20) -> List[ActiveCall]:
        calls = [c for c in self._calls.values() if channel_id in c.channel_ids]
        calls.sort(key=lambda c: c.end_time or 0, reverse=True)
        return calls[:limit]

    async def delete_older_than(self, cutoff_ms: int) -> int:
        async with self._lock:
            stale = [cid for cid, c in self._calls.items() if (c.end_time or 0) < cutoff_ms]
            for call_id in stale:
                del self._calls[call_id]
            return len(stale)


class SqlAlchemyEndedCallRepository(EndedCallRepository):
    """
    Stores ended calls in the ``ended_calls`` table.

    Example:
        db = DatabaseManager(settings.database_url)
        await db.create_all()
        repository = SqlAlchemyEndedCallRepository(db)
    """

    def __init__(self, database: DatabaseManager):
        self._db = database

    @staticmethod
    def _to_record(call: ActiveCall) -> EndedCallRecord:
        data = call_to_dict(call)
        return EndedCallRecord(
            id=call.id,
            initiator_id=call.initiator_id,
            status=call.status.value,
            start_time=call.start_time,
            end_time=call.end_time if call.end_time is not None else call.start_time,
            end_reason=call.end_reason,
            flagged_for_review=call.flagged_for_review,
            message_count=len(call.messages),
            first_channel_id=call.participants[0].channel_id,
            second_channel_id=call.participants[1].channel_id,
            participants=data["participants"],
            messages=data["messages"],
        )

    @staticmethod
    def _from_record(record: EndedCallRecord) -> ActiveCall:
        return call_from_dict({
            "id": record.id,
            "participants": record.participants,
            "start_time": record.start_time,
            "initiator_id": record.initiator_id,
            "messages": record.messages,
            "status": record.status,
            "end_time": record.end_time,
            "end_reason": record.end_reason,
            "flagged_for_review": record.flagged_for_review,
        })

    async def save(self, call: ActiveCall) -> None:
        async with self._db.session() as session:
            await session.merge(self._to_record(call))
        logger.debug("ended_call_persisted", call_id=call.id)

    async def get(self, call_id: str) -> Optional[ActiveCall]:
        async with self._db.session() as session:
            record = await session.get(EndedCallRecord, call_id)
            return self._from_record(record) if record else None

    async def count(self) -> int:
        async with self._db.session() as session:
            result = await session.execute(select(func.count()).select_from(EndedCallRecord))
            return int(result.scalar_one())

    async def list_for_channel(self, channel_id: str, limit: int = 20) -> List[ActiveCall]:
        async with self._db.session() as session:
            result = await session.execute(
                select(EndedCallRecord)
                .where(
                    or_(
                        EndedCallRecord.first_channel_id == channel_id,
                        EndedCallRecord.second_channel_id == channel_id,
                    )
                )
                .order_by(EndedCallRecord.end_time.desc())
                .limit(limit)
            )
            return [self._from_record(r) for r in result.scalars().all()]

    async def delete_older_than(self, cutoff_ms: int) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(EndedCallRecord).where(EndedCallRecord.end_time < cutoff_ms)
            )
            deleted = result.rowcount or 0
        if deleted:
            logger.info("ended_calls_pruned", deleted=deleted)
        return deleted


__all__ = [
    "EndedCallRepository",
    "InMemoryEndedCallRepository",
    "SqlAlchemyEndedCallRepository",
]
