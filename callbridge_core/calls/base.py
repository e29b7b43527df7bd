"""
Call Domain Types
=================

Base data structures and exceptions shared by the queue, matching, state and
call management modules.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


# =============================================================================
# Enums
# =============================================================================


class CallStatus(str, Enum):
    """Status of a paired call."""

    ACTIVE = "active"
    ENDED = "ended"


class ParticipantAction(str, Enum):
    """Membership change on one side of a call."""

    JOINED = "joined"
    LEFT = "left"


class EndReason(str, Enum):
    """Why a call was ended."""

    HANGUP = "hangup"
    SKIP = "skip"
    PARTICIPANT_LEFT = "participant_left"
    TIMEOUT = "timeout"


class CallErrorCode(str, Enum):
    """Error codes surfaced to the command layer."""

    CHANNEL_ALREADY_IN_CALL = "channel_already_in_call"
    CHANNEL_ALREADY_IN_QUEUE = "channel_already_in_queue"
    QUEUE_FULL = "queue_full"
    CALL_NOT_FOUND = "call_not_found"
    CHANNEL_NOT_IN_CALL = "channel_not_in_call"
    CORRUPTED_DATA = "corrupted_data"
    STORE_UNAVAILABLE = "store_unavailable"


# =============================================================================
# Exceptions
# =============================================================================


class CallError(Exception):
    """Base exception for call pairing errors."""

    code: CallErrorCode = CallErrorCode.STORE_UNAVAILABLE

    def __init__(self, message: str, code: Optional[CallErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class AlreadyQueuedError(CallError):
    """The channel already has a waiting request."""

    code = CallErrorCode.CHANNEL_ALREADY_IN_QUEUE


class ChannelInCallError(CallError):
    """The channel is already in a live call."""

    code = CallErrorCode.CHANNEL_ALREADY_IN_CALL


class QueueFullError(CallError):
    """The queue is at capacity."""

    code = CallErrorCode.QUEUE_FULL


class CallNotFoundError(CallError):
    """No active call matches the given id or channel."""

    code = CallErrorCode.CALL_NOT_FOUND


class CorruptedPayloadError(CallError):
    """A stored record could not be decoded."""

    code = CallErrorCode.CORRUPTED_DATA


class StoreUnavailableError(CallError):
    """The backing store could not be reached."""

    code = CallErrorCode.STORE_UNAVAILABLE


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ChannelInfo:
    """The chat channel a command was issued from."""

    channel_id: str
    guild_id: str
    webhook_url: str


@dataclass(frozen=True)
class CallRequest:
    """
    A channel waiting in the queue.

    ``timestamp`` is the enqueue time in epoch milliseconds. Higher priority
    values push the request further back in the ordering.
    """

    id: str
    channel_id: str
    guild_id: str
    webhook_url: str
    initiator_id: str
    timestamp: int = field(default_factory=now_ms)
    priority: int = 0

    @classmethod
    def create(
        cls,
        channel: ChannelInfo,
        initiator_id: str,
        priority: int = 0,
        timestamp: Optional[int] = None,
    ) -> "CallRequest":
        return cls(
            id=new_request_id(),
            channel_id=channel.channel_id,
            guild_id=channel.guild_id,
            webhook_url=channel.webhook_url,
            initiator_id=initiator_id,
            timestamp=now_ms() if timestamp is None else timestamp,
            priority=priority,
        )

    def score(self, priority_weight_ms: int) -> int:
        """Sorted-set score: lower is served first."""
        return self.timestamp + self.priority * priority_weight_ms

    def age_ms(self, now: int) -> int:
        return max(0, now - self.timestamp)


@dataclass(frozen=True)
class QueueStatus:
    """Position of a request in the queue (1-based)."""

    position: int
    queue_length: int


@dataclass
class CallParticipant:
    """One side of a call."""

    channel_id: str
    guild_id: str
    webhook_url: str
    users: Set[str] = field(default_factory=set)
    message_count: int = 0
    joined_at: int = field(default_factory=now_ms)

    @classmethod
    def from_request(cls, request: CallRequest, joined_at: int) -> "CallParticipant":
        return cls(
            channel_id=request.channel_id,
            guild_id=request.guild_id,
            webhook_url=request.webhook_url,
            users={request.initiator_id},
            joined_at=joined_at,
        )


@dataclass(frozen=True)
class CallMessage:
    """A message relayed through a call. Never mutated once appended."""

    author_id: str
    author_username: str
    content: str
    timestamp: int = field(default_factory=now_ms)
    attachment_url: Optional[str] = None


@dataclass
class ActiveCall:
    """A paired session between two channels."""

    id: str
    participants: List[CallParticipant]
    start_time: int
    initiator_id: Optional[str] = None
    messages: List[CallMessage] = field(default_factory=list)
    status: CallStatus = CallStatus.ACTIVE
    end_time: Optional[int] = None
    end_reason: Optional[str] = None
    flagged_for_review: bool = False

    @property
    def channel_ids(self) -> List[str]:
        return [p.channel_id for p in self.participants]

    @property
    def is_active(self) -> bool:
        return self.status == CallStatus.ACTIVE

    def participant(self, channel_id: str) -> Optional[CallParticipant]:
        for participant in self.participants:
            if participant.channel_id == channel_id:
                return participant
        return None

    def other_participant(self, channel_id: str) -> Optional[CallParticipant]:
        for participant in self.participants:
            if participant.channel_id != channel_id:
                return participant
        return None

    def participant_for_user(self, user_id: str) -> Optional[CallParticipant]:
        for participant in self.participants:
            if user_id in participant.users:
                return participant
        return None

    def duration_ms(self, now: Optional[int] = None) -> int:
        end = self.end_time if self.end_time is not None else (now if now is not None else now_ms())
        return max(0, end - self.start_time)

    def ended(self, reason: str, end_time: int) -> "ActiveCall":
        """Return the terminal copy of this call."""
        return replace(
            self,
            status=CallStatus.ENDED,
            end_time=end_time,
            end_reason=reason,
        )


# =============================================================================
# Results
# =============================================================================


@dataclass
class CallResult:
    """Uniform outcome of a Call Manager operation."""

    success: bool
    message: str
    call_id: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[CallErrorCode] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "call_id": self.call_id,
            "status": self.status,
            "error_code": self.error_code.value if self.error_code else None,
        }


@dataclass
class MatchResult:
    """Outcome of one matching attempt."""

    matched: bool
    call_id: Optional[str] = None
    participants: Optional[List[CallParticipant]] = None
    match_time: float = 0.0


__all__ = [
    "now_ms",
    "new_request_id",
    "new_call_id",
    "CallStatus",
    "ParticipantAction",
    "EndReason",
    "CallErrorCode",
    "CallError",
    "AlreadyQueuedError",
    "ChannelInCallError",
    "QueueFullError",
    "CallNotFoundError",
    "CorruptedPayloadError",
    "StoreUnavailableError",
    "ChannelInfo",
    "CallRequest",
    "QueueStatus",
    "CallParticipant",
    "CallMessage",
    "ActiveCall",
    "CallResult",
    "MatchResult",
]
