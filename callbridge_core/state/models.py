"""Durable record of finished calls."""

from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from callbridge_core.database.base import Base, RecordedAtMixin


class EndedCallRecord(Base, RecordedAtMixin):
    """A call that reached the ENDED state. Written once per call."""

    __tablename__ = "ended_calls"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    initiator_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="ended", nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    flagged_for_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Participant channels, denormalized for lookups by channel
    first_channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    second_channel_id: Mapped[str] = mapped_column(String(64), nullable=False)

    participants: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    messages: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        Index("idx_ended_calls_end_time", "end_time"),
        Index("idx_ended_calls_first_channel", "first_channel_id"),
        Index("idx_ended_calls_second_channel", "second_channel_id"),
    )


__all__ = ["EndedCallRecord"]
