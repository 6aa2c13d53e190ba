"""Sequential drain of a mention batch."""

import asyncio
import logging
from typing import Optional

from ..models import BatchSummary, ExecutionKind, ExecutionResult, MentionEvent
from .change_store import ChangeStore
from .claude_processor import ClaudeProcessor

logger = logging.getLogger(__name__)


class MentionDispatcher:
    """Process mentions one at a time, isolating failures between them.

    ``is_draining`` is set for the duration of a batch; a second batch
    submitted while it is set is dropped rather than queued.
    """

    def __init__(
        self,
        processor: ClaudeProcessor,
        change_store: ChangeStore,
        inter_mention_delay: float = 2.0,
        mark_failed_as_processed: bool = True,
    ):
        self.processor = processor
        self.store = change_store
        self.inter_mention_delay = inter_mention_delay
        self.mark_failed_as_processed = mark_failed_as_processed
        self.is_draining = False

    def should_mark_processed(self, result: ExecutionResult) -> bool:
        if result.kind == ExecutionKind.SKIPPED:
            return False
        if result.kind.is_failure:
            return self.mark_failed_as_processed
        return True

    async def process_batch(self, mentions: list[MentionEvent]) -> Optional[BatchSummary]:
        """Process every mention in order.

        Returns:
            Summary of the batch, or None if another batch was still draining.
        """
        if self.is_draining:
            logger.info("A mention batch is already being processed, skipping this one")
            return None

        summary = BatchSummary()
        if not mentions:
            return summary

        logger.info("Processing %d mention(s) sequentially", len(mentions))
        self.is_draining = True
        try:
            for index, mention in enumerate(mentions):
                result = await self.processor.process_mention(mention)
                summary.results.append((mention, result))

                if result.kind == ExecutionKind.SKIPPED:
                    summary.skipped += 1
                else:
                    summary.attempted += 1
                    if result.success:
                        summary.succeeded += 1
                    elif result.kind.is_failure:
                        summary.failed += 1

                if self.should_mark_processed(result):
                    await self._mark_processed(mention)

                # Stay under the GitHub API rate limit, whatever the outcome
                if index < len(mentions) - 1 and self.inter_mention_delay > 0:
                    await asyncio.sleep(self.inter_mention_delay)
        finally:
            self.is_draining = False

        logger.info(
            "Mention processing completed: %d/%d succeeded (%d failed, %d deferred)",
            summary.succeeded,
            summary.attempted,
            summary.failed,
            summary.skipped,
        )
        return summary

    async def _mark_processed(self, mention: MentionEvent) -> None:
        history_ids = mention.history_ids
        if not history_ids:
            logger.warning("Mention %s #%s has no history entry to mark", mention.type.value, mention.id)
            return

        for history_id in history_ids:
            await self.store.mark_mention_processed(history_id)
        mention.processed = True
        await self.store.update_daily_stats(processed_mentions=1, checks=0)
