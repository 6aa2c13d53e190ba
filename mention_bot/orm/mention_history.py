"""MentionHistory model: append-only log of detected mentions."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class MentionHistory(Base):
    """One row per confirmed mention occurrence."""

    __tablename__ = "mention_history"
    __table_args__ = (
        Index("idx_mention_history_detected", "detected_at"),
        Index("idx_mention_history_processed", "processed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Issue/PR number the comment belongs to
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_login: Mapped[str] = mapped_column(String, nullable=False)
    mention_content: Mapped[str] = mapped_column(Text, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<MentionHistory(id={self.id}, type={self.item_type}, item_id={self.item_id}, "
            f"user={self.user_login}, processed={self.processed})>"
        )
