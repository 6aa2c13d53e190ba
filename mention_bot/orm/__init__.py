"""ORM models for database persistence."""

from .base import Base, SqlalchemyBase, utcnow
from .mention_history import MentionHistory
from .processing_stats import ProcessingStats
from .tracked_item import TrackedItem

__all__ = [
    "Base",
    "SqlalchemyBase",
    "MentionHistory",
    "ProcessingStats",
    "TrackedItem",
    "utcnow",
]
