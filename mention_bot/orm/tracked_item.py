"""TrackedItem model: the content-hash dedup ledger."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, utcnow


class TrackedItem(SqlalchemyBase):
    """Last observed content digest of an issue, PR or comment."""

    __tablename__ = "tracked_items"
    __table_args__ = (
        Index("idx_tracked_items_type_id", "item_type", "item_id", unique=True),
    )

    item_type: Mapped[str] = mapped_column(String, nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    has_mention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_checked: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<TrackedItem(type={self.item_type}, item_id={self.item_id}, "
            f"hash={self.content_hash[:8]}, has_mention={self.has_mention})>"
        )
