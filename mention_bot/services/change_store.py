"""Content-hash change tracking, mention history and daily statistics."""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from ..models import MentionType
from ..orm import MentionHistory, ProcessingStats, TrackedItem, utcnow
from .database import DatabaseService

logger = logging.getLogger(__name__)


def today_utc() -> str:
    """Today's date in UTC as YYYY-MM-DD."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class ChangeStore:
    """Decide whether tracked content changed and persist mention occurrences.

    The store is the dedup ledger for the scanner: an item is reported as
    changed on first sight and whenever its SHA-256 digest differs from the
    stored one. Calling :meth:`is_content_changed` again with identical
    content only touches ``last_checked``.
    """

    def __init__(self, db_service: DatabaseService, mention_patterns: Iterable[str]):
        """Initialize the change store.

        Args:
            db_service: Database service owning the engine
            mention_patterns: Case-insensitive substrings that count as a mention
        """
        self.db = db_service
        self.mention_patterns = [p.lower() for p in mention_patterns]

    @staticmethod
    def calculate_content_hash(content: str) -> str:
        """SHA-256 hex digest of the content."""
        return hashlib.sha256((content or "").encode("utf-8")).hexdigest()

    def contains_mention(self, content: Optional[str]) -> bool:
        """Check whether content contains any configured mention pattern."""
        if not content:
            return False
        lowered = content.lower()
        return any(pattern in lowered for pattern in self.mention_patterns)

    async def is_content_changed(
        self,
        item_type: MentionType | str,
        item_id: int,
        content: str,
        parent_id: Optional[int] = None,
    ) -> bool:
        """Record the current content of an item and report whether it changed.

        Returns:
            True on first sight or when the digest differs, False otherwise.
        """
        item_type = MentionType(item_type).value
        content_hash = self.calculate_content_hash(content)
        now = utcnow()

        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(TrackedItem).where(
                        TrackedItem.item_type == item_type,
                        TrackedItem.item_id == item_id,
                    )
                )
                existing = result.scalar_one_or_none()

                if existing is None:
                    session.add(
                        TrackedItem(
                            item_type=item_type,
                            item_id=item_id,
                            parent_id=parent_id,
                            content_hash=content_hash,
                            has_mention=self.contains_mention(content),
                            last_checked=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    return True

                if existing.content_hash != content_hash:
                    existing.content_hash = content_hash
                    existing.has_mention = self.contains_mention(content)
                    existing.last_checked = now
                    existing.updated_at = now
                    if parent_id is not None:
                        existing.parent_id = parent_id
                    return True

                existing.last_checked = now
                return False

        except SQLAlchemyError as e:
            logger.error("Error checking content change for %s #%s: %s", item_type, item_id, e)
            raise

    async def get_tracked_item(self, item_type: MentionType | str, item_id: int) -> Optional[TrackedItem]:
        """Fetch the ledger row for an item."""
        async with self.db.session() as session:
            result = await session.execute(
                select(TrackedItem).where(
                    TrackedItem.item_type == MentionType(item_type).value,
                    TrackedItem.item_id == item_id,
                )
            )
            return result.scalar_one_or_none()

    async def record_mention(
        self,
        item_type: MentionType | str,
        item_id: int,
        user_login: str,
        content: str,
        parent_id: Optional[int] = None,
    ) -> int:
        """Append an unprocessed mention history entry.

        Returns:
            The id of the new history row.
        """
        item_type = MentionType(item_type).value
        try:
            async with self.db.session() as session:
                entry = MentionHistory(
                    item_type=item_type,
                    item_id=item_id,
                    parent_id=parent_id,
                    user_login=user_login,
                    mention_content=content,
                    detected_at=utcnow(),
                    processed=False,
                )
                session.add(entry)
                await session.flush()
                history_id = entry.id

            logger.info("Mention recorded: %s #%s by @%s (history id %d)", item_type, item_id, user_login, history_id)
            return history_id

        except SQLAlchemyError as e:
            logger.error("Error recording mention for %s #%s by @%s: %s", item_type, item_id, user_login, e)
            raise

    async def mark_mention_processed(self, history_id: int) -> bool:
        """Mark a history entry processed.

        Returns:
            False if no entry with that id exists.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(MentionHistory)
                .where(MentionHistory.id == history_id)
                .values(processed=True, processed_at=utcnow())
            )
            updated = result.rowcount or 0

        if not updated:
            logger.warning("Mention history entry %s not found; nothing marked", history_id)
            return False
        return True

    async def get_unprocessed_mentions(self) -> list[MentionHistory]:
        """Unprocessed history entries, oldest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(MentionHistory)
                .where(MentionHistory.processed == False)  # noqa: E712
                .order_by(MentionHistory.detected_at.asc(), MentionHistory.id.asc())
            )
            return list(result.scalars().all())

    async def update_daily_stats(
        self,
        new_mentions: int = 0,
        api_calls: int = 0,
        tokens_used: int = 0,
        processed_mentions: int = 0,
        checks: int = 1,
    ) -> None:
        """Add to today's counters, creating the row on first write."""
        values = {
            "total_checks": checks,
            "new_mentions": new_mentions,
            "processed_mentions": processed_mentions,
            "api_calls": api_calls,
            "tokens_used": tokens_used,
        }
        stmt = sqlite_insert(ProcessingStats).values(date=today_utc(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProcessingStats.date],
            set_={
                name: getattr(ProcessingStats, name) + stmt.excluded[name]
                for name in values
            },
        )

        async with self.db.session() as session:
            await session.execute(stmt)

    async def get_today_stats(self) -> Optional[ProcessingStats]:
        """Today's counters, or None if nothing was recorded yet."""
        async with self.db.session() as session:
            return await session.get(ProcessingStats, today_utc())

    async def backup(self, backup_path: str | Path) -> Path:
        """Write a point-in-time copy of the store to ``backup_path``."""
        try:
            target = await self.db.snapshot(backup_path)
            logger.info("Database backup created: %s", target)
            return target
        except (SQLAlchemyError, OSError) as e:
            logger.error("Database backup failed (%s): %s", backup_path, e)
            raise
