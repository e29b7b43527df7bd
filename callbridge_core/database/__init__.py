"""Durable storage infrastructure."""

from callbridge_core.database.base import Base, DatabaseManager, RecordedAtMixin

__all__ = ["Base", "DatabaseManager", "RecordedAtMixin"]
