"""Call domain types, the Call Manager facade and its collaborators."""

from callbridge_core.calls.base import (
    ActiveCall,
    AlreadyQueuedError,
    CallError,
    CallErrorCode,
    CallMessage,
    CallNotFoundError,
    CallParticipant,
    CallRequest,
    CallResult,
    CallStatus,
    ChannelInCallError,
    ChannelInfo,
    CorruptedPayloadError,
    EndReason,
    MatchResult,
    ParticipantAction,
    QueueFullError,
    QueueStatus,
    StoreUnavailableError,
)

__all__ = [
    "ActiveCall",
    "AlreadyQueuedError",
    "CallError",
    "CallErrorCode",
    "CallMessage",
    "CallNotFoundError",
    "CallParticipant",
    "CallRequest",
    "CallResult",
    "CallStatus",
    "ChannelInCallError",
    "ChannelInfo",
    "CorruptedPayloadError",
    "EndReason",
    "MatchResult",
    "ParticipantAction",
    "QueueFullError",
    "QueueStatus",
    "StoreUnavailableError",
]
