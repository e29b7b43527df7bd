"""
Callbridge
==========

Distributed call pairing core for chat channels.

This package provides the backend infrastructure including:
- Distributed wait queue with atomic Redis scripts
- Lease-based leader election for the background matching sweep
- Matching engine with compatibility rules and cooldowns
- Authoritative active-call state store
- Call Manager facade consumed by the command layer
"""

__version__ = "1.0.0"
