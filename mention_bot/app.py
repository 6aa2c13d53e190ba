"""Cycle orchestrator: schedules detection and backups, owns the lifecycle."""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Config
from .errors import ConfigurationError
from .models import BatchSummary
from .orm import utcnow
from .services import (
    ChangeStore,
    ClaudeProcessor,
    DatabaseService,
    GitHubService,
    MentionDetector,
    MentionDispatcher,
    event_from_history,
    merge_mentions,
)

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "mention_tracker"


class AppState(Enum):
    """Lifecycle states of the orchestrator."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def backup_file_name(at: Optional[datetime] = None) -> str:
    """``mention_tracker_<ISO 8601 with ':' and '.' replaced by '-'>.db``"""
    at = at or utcnow()
    timestamp = at.isoformat().replace(":", "-").replace(".", "-")
    return f"{BACKUP_PREFIX}_{timestamp}.db"


def build_cron_trigger(expression: str, name: str) -> CronTrigger:
    """Parse a five-field crontab expression, evaluated in UTC."""
    try:
        return CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name} schedule '{expression}': {e}") from e


class MentionBotApp:
    """Tie scanner, change store and dispatcher together on a timer."""

    def __init__(
        self,
        config: Config,
        db_service: Optional[DatabaseService] = None,
        github_service: Optional[GitHubService] = None,
    ) -> None:
        self.config = config
        self.db = db_service or DatabaseService(config.database.path)
        self.github = github_service or GitHubService(
            token=config.github.token.get_secret_value(),
            owner=config.github.owner,
            repo=config.github.repo,
            api_base=config.github.api_base,
            max_pages=config.github.max_pages,
        )
        self.store = ChangeStore(self.db, config.mention.patterns)
        self.detector = MentionDetector(self.github, self.store)
        self.processor = ClaudeProcessor(config, self.github, self.store)
        self.dispatcher = MentionDispatcher(
            self.processor,
            self.store,
            inter_mention_delay=config.processing.inter_mention_delay,
            mark_failed_as_processed=config.processing.mark_failed_as_processed,
        )

        self.state = AppState.STOPPED
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_summary: Optional[BatchSummary] = None
        self._cycle_running = False

    @property
    def is_running(self) -> bool:
        return self.state == AppState.RUNNING

    @property
    def is_draining(self) -> bool:
        return self.dispatcher.is_draining

    async def initialize(self) -> None:
        """Create tables and verify GitHub connectivity."""
        logger.info("Initializing database at %s", self.db.database_path)
        await self.db.initialize()

        repo_info = await self.github.get_repository_info()
        logger.info("Connected to GitHub repository %s", repo_info.get("full_name"))

    async def start(self) -> None:
        """Initialize, install the schedules and run a first detection cycle."""
        if self.state != AppState.STOPPED:
            logger.warning("Bot is already %s", self.state.value)
            return

        self.state = AppState.STARTING
        try:
            detection_trigger = build_cron_trigger(self.config.cron.detection_interval, "detection")
            backup_trigger = build_cron_trigger(self.config.cron.backup_interval, "backup")

            await self.initialize()

            self.scheduler = AsyncIOScheduler(timezone="UTC")
            self.scheduler.add_job(
                self._detection_job,
                trigger=detection_trigger,
                id="detection",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.scheduler.add_job(
                self._backup_job,
                trigger=backup_trigger,
                id="backup",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.scheduler.start()
            self.state = AppState.RUNNING

        except Exception:
            logger.error("Failed to start bot", exc_info=True)
            self.state = AppState.STOPPED
            await self._close_resources()
            raise

        logger.info(
            "Bot started (detection: %s, backup: %s)",
            self.config.cron.detection_interval,
            self.config.cron.backup_interval,
        )
        await self.run_detection_cycle()

    async def stop(self) -> None:
        """Cancel schedules and close the store. Safe to call repeatedly."""
        if self.state in (AppState.STOPPED, AppState.STOPPING):
            logger.debug("Bot is not running")
            return

        logger.info("Stopping bot...")
        self.state = AppState.STOPPING

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        await self._close_resources()
        self.state = AppState.STOPPED
        logger.info("Bot stopped")

    async def run_once(self) -> bool:
        """Initialize, run exactly one detection cycle and close."""
        try:
            await self.initialize()
            logger.info("Running single detection cycle...")
            return await self.run_detection_cycle()
        finally:
            await self._close_resources()

    async def _close_resources(self) -> None:
        await self.db.close()
        await self.github.close()
        logger.info("Database connection closed")

    async def _detection_job(self) -> None:
        if self.is_running:
            await self.run_detection_cycle()

    async def _backup_job(self) -> None:
        if self.is_running:
            await self.run_backup()

    async def run_detection_cycle(self) -> bool:
        """Scan, merge with the backlog, dispatch, then advance the watermark.

        Returns:
            True if the cycle completed; False if it was skipped or failed.
            A failed or skipped cycle leaves the watermark untouched.
        """
        if self._cycle_running or self.dispatcher.is_draining:
            logger.info("Mention processing is still in progress, skipping this cycle")
            return False

        self._cycle_running = True
        try:
            since = self.detector.get_last_check_time()
            started = utcnow()
            logger.info("Starting detection cycle (since %s)", since.isoformat())

            new_mentions = await self.detector.detect_new_mentions(since)
            backlog = [event_from_history(entry) for entry in await self.store.get_unprocessed_mentions()]
            mentions = merge_mentions(new_mentions, backlog)

            if not mentions:
                logger.debug("No new or pending mentions")
            else:
                logger.info(
                    "%d mention(s) to process (%d new, %d pending)",
                    len(mentions),
                    len(new_mentions),
                    len(mentions) - len(new_mentions),
                )

            summary = await self.dispatcher.process_batch(mentions)
            if summary is None:
                return False

            self.last_summary = summary
            self.detector.update_last_check_time(started)
            logger.info("Detection cycle completed (%d mention(s), since %s)", len(mentions), since.isoformat())
            return True

        except Exception as e:
            logger.error("Detection cycle failed: %s", e, exc_info=True)
            return False
        finally:
            self._cycle_running = False

    @property
    def backup_dir(self) -> Path:
        return Path(self.config.database.backup_dir).expanduser()

    async def run_backup(self) -> Optional[Path]:
        """Snapshot the store and prune old snapshots. Errors are logged only."""
        try:
            logger.info("Starting database backup...")
            backup_path = await self.store.backup(self.backup_dir / backup_file_name())
            self.cleanup_old_backups()
            return backup_path
        except Exception as e:
            logger.error("Backup failed: %s", e, exc_info=True)
            return None

    def cleanup_old_backups(
        self,
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[Path]:
        """Delete snapshot files whose mtime is older than the retention window.

        Returns:
            The paths that were deleted.
        """
        retention_days = retention_days or self.config.database.backup_retention_days
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=retention_days)).timestamp()
        deleted: list[Path] = []

        if not self.backup_dir.is_dir():
            return deleted

        for path in sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}_*.db")):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted.append(path)
                    logger.debug("Deleted old backup: %s", path.name)
            except OSError as e:
                logger.warning("Failed to delete old backup %s: %s", path, e)

        if deleted:
            logger.info("Removed %d backup(s) older than %d days", len(deleted), retention_days)
        return deleted

    async def get_status(self) -> dict[str, Any]:
        """Snapshot of the lifecycle, today's counters and configuration."""
        stats = await self.store.get_today_stats()
        return {
            "state": self.state.value,
            "is_running": self.is_running,
            "is_processing_mentions": self.dispatcher.is_draining,
            "running_executions": self.processor.running_executions,
            "last_check_time": self.detector.get_last_check_time().isoformat(),
            "repository": self.github.repository,
            "today_stats": stats.to_dict() if stats else None,
            "configuration": {
                "detection_interval": self.config.cron.detection_interval,
                "backup_interval": self.config.cron.backup_interval,
                "daily_token_limit": self.config.claude.daily_token_limit,
                "mention_patterns": self.config.mention.patterns,
                "max_concurrent_executions": self.config.processing.max_concurrent_executions,
                "mark_failed_as_processed": self.config.processing.mark_failed_as_processed,
            },
        }
