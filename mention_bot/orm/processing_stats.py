"""ProcessingStats model: per-day counters."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ProcessingStats(Base):
    """Daily rollup keyed by UTC date (YYYY-MM-DD)."""

    __tablename__ = "processing_stats"

    date: Mapped[str] = mapped_column(String(10), primary_key=True)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_mentions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_mentions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dict(self) -> dict[str, int | str]:
        return {
            "date": self.date,
            "total_checks": self.total_checks,
            "new_mentions": self.new_mentions,
            "processed_mentions": self.processed_mentions,
            "api_calls": self.api_calls,
            "tokens_used": self.tokens_used,
        }
