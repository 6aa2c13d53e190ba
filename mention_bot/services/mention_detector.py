"""Poll GitHub for new mentions and filter them through the change store."""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..models import MentionEvent, MentionType
from ..orm import MentionHistory, utcnow
from .change_store import ChangeStore
from .github_service import GitHubService

logger = logging.getLogger(__name__)

# Cold-start lookback when no watermark has been recorded yet
DEFAULT_LOOKBACK = timedelta(hours=1)


class MentionDetector:
    """Scan issues, pull requests and their comments since a watermark."""

    def __init__(self, github_service: GitHubService, change_store: ChangeStore):
        self.github = github_service
        self.store = change_store
        self._last_check_time: Optional[datetime] = None

    def get_last_check_time(self) -> datetime:
        """The watermark, or one hour ago if none has been set."""
        if self._last_check_time is not None:
            return self._last_check_time
        return utcnow() - DEFAULT_LOOKBACK

    def update_last_check_time(self, at: Optional[datetime] = None) -> datetime:
        """Advance the watermark to ``at`` (default: now). It never moves back."""
        at = at or utcnow()
        if self._last_check_time is None or at > self._last_check_time:
            self._last_check_time = at
        logger.debug("Updated last check time: %s", self._last_check_time.isoformat())
        return self._last_check_time

    async def detect_new_mentions(self, since: Optional[datetime] = None) -> list[MentionEvent]:
        """Return mentions in content that changed since the watermark.

        Every changed item that contains a mention pattern is recorded in the
        mention history. Any API error aborts the scan.
        """
        since = since or self.get_last_check_time()
        mentions: list[MentionEvent] = []

        logger.debug("Starting mention detection since %s", since.isoformat())

        try:
            for issue in await self.github.get_issues_since(since):
                event = await self._check_item(
                    MentionType.ISSUE,
                    item_id=issue["number"],
                    content=issue.get("body") or "",
                    data=issue,
                    title=issue.get("title"),
                )
                if event:
                    mentions.append(event)

            for comment in await self.github.get_issue_comments_since(since):
                event = await self._check_item(
                    MentionType.ISSUE_COMMENT,
                    item_id=comment["id"],
                    content=comment.get("body") or "",
                    data=comment,
                    parent_id=self.github.extract_issue_number(comment["issue_url"]),
                )
                if event:
                    mentions.append(event)

            for pr in await self.github.get_pull_requests_since(since):
                event = await self._check_item(
                    MentionType.PR,
                    item_id=pr["number"],
                    content=pr.get("body") or "",
                    data=pr,
                    title=pr.get("title"),
                )
                if event:
                    mentions.append(event)

            for comment in await self.github.get_pull_request_comments_since(since):
                event = await self._check_item(
                    MentionType.PR_COMMENT,
                    item_id=comment["id"],
                    content=comment.get("body") or "",
                    data=comment,
                    parent_id=self.github.extract_pull_request_number(comment["pull_request_url"]),
                )
                if event:
                    mentions.append(event)

        except Exception as e:
            logger.error("Error during mention detection since %s: %s", since.isoformat(), e)
            raise

        await self.store.update_daily_stats(new_mentions=len(mentions), api_calls=1)

        by_type = Counter(m.type.value for m in mentions)
        logger.info(
            "Mention detection completed: %d mention(s) since %s (%s)",
            len(mentions),
            since.isoformat(),
            ", ".join(f"{k}={v}" for k, v in sorted(by_type.items())) or "none",
        )
        return mentions

    async def _check_item(
        self,
        item_type: MentionType,
        item_id: int,
        content: str,
        data: dict[str, Any],
        parent_id: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Optional[MentionEvent]:
        changed = await self.store.is_content_changed(item_type, item_id, content, parent_id)
        if not changed or not self.store.contains_mention(content):
            return None

        user = (data.get("user") or {}).get("login", "")
        history_id = await self.store.record_mention(item_type, item_id, user, content, parent_id)

        return MentionEvent(
            type=item_type,
            id=item_id,
            parent_id=parent_id,
            content=content,
            user=user,
            detected_at=utcnow(),
            url=data.get("html_url"),
            title=title,
            mention_history_id=history_id,
        )


def event_from_history(entry: MentionHistory) -> MentionEvent:
    """Rebuild a MentionEvent from an unprocessed history row."""
    detected_at = entry.detected_at
    if detected_at.tzinfo is None:
        detected_at = detected_at.replace(tzinfo=timezone.utc)
    return MentionEvent(
        type=MentionType(entry.item_type),
        id=entry.item_id,
        parent_id=entry.parent_id,
        content=entry.mention_content,
        user=entry.user_login,
        detected_at=detected_at,
        processed=entry.processed,
        mention_history_id=entry.id,
    )


def merge_mentions(new: list[MentionEvent], backlog: list[MentionEvent]) -> list[MentionEvent]:
    """Union of fresh and backlog mentions keyed by (type, id).

    Fresh events come first in their original order, followed by backlog
    events whose key was not seen yet. History ids of dropped duplicates are
    folded into the surviving event so they are marked processed with it.
    """
    merged: dict[tuple[str, int], MentionEvent] = {}

    for event in [*new, *backlog]:
        existing = merged.get(event.key)
        if existing is None:
            merged[event.key] = event
            continue
        for history_id in event.history_ids:
            if history_id not in existing.history_ids:
                existing.duplicate_history_ids.append(history_id)

    return list(merged.values())
