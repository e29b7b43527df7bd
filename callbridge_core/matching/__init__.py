"""Pairing of queued requests into calls."""

from callbridge_core.matching.cooldown import (
    InMemoryRecentMatchCache,
    RecentMatchCache,
    RedisRecentMatchCache,
)
from callbridge_core.matching.engine import MatchingEngine
from callbridge_core.matching.rules import MatchRules, Rejection, check_compatibility

__all__ = [
    "MatchingEngine",
    "MatchRules",
    "Rejection",
    "check_compatibility",
    "RecentMatchCache",
    "InMemoryRecentMatchCache",
    "RedisRecentMatchCache",
]
