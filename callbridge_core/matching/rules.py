"""
Compatibility rules for pairing two queued requests.

All checks are pure; the caller supplies the current time and whether the
pair was matched recently.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from callbridge_core.calls.base import CallRequest


class Rejection(str, Enum):
    SAME_REQUEST = "same_request"
    SAME_GUILD = "same_guild"
    SAME_INITIATOR = "same_initiator"
    RECENT_MATCH = "recent_match"
    AGE_MISMATCH = "age_mismatch"


@dataclass(frozen=True)
class MatchRules:
    """Thresholds for the age rule, in milliseconds."""

    max_age_difference_ms: int = 5 * 60 * 1000
    age_grace_period_ms: int = 10 * 60 * 1000

    @classmethod
    def from_seconds(cls, max_age_difference: int, age_grace_period: int) -> "MatchRules":
        return cls(
            max_age_difference_ms=max_age_difference * 1000,
            age_grace_period_ms=age_grace_period * 1000,
        )


def check_static(first: CallRequest, second: CallRequest) -> Optional[Rejection]:
    """Rules that need no I/O: identity, guild and initiator."""
    if first.id == second.id or first.channel_id == second.channel_id:
        return Rejection.SAME_REQUEST
    if first.guild_id == second.guild_id:
        return Rejection.SAME_GUILD
    if first.initiator_id == second.initiator_id:
        return Rejection.SAME_INITIATOR
    return None


def check_age(
    first: CallRequest,
    second: CallRequest,
    now: int,
    rules: MatchRules,
) -> Optional[Rejection]:
    """
    Requests queued far apart are only paired once the older one has waited
    past the grace period.
    """
    difference = abs(first.timestamp - second.timestamp)
    if difference <= rules.max_age_difference_ms:
        return None

    oldest = min(first.timestamp, second.timestamp)
    if now - oldest < rules.age_grace_period_ms:
        return Rejection.AGE_MISMATCH
    return None


def check_compatibility(
    first: CallRequest,
    second: CallRequest,
    now: int,
    rules: MatchRules,
    recently_matched: bool,
) -> Optional[Rejection]:
    """Return the first rule the pair violates, or None if they may be paired."""
    rejection = check_static(first, second)
    if rejection:
        return rejection
    if recently_matched:
        return Rejection.RECENT_MATCH
    return check_age(first, second, now, rules)


__all__ = [
    "Rejection",
    "MatchRules",
    "check_static",
    "check_age",
    "check_compatibility",
]
