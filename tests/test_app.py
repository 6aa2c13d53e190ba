"""Tests for the cycle orchestrator."""

import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from mention_bot.app import AppState, MentionBotApp, backup_file_name, build_cron_trigger
from mention_bot.errors import ConfigurationError, GitHubAPIError
from mention_bot.orm import utcnow

from .conftest import github_time, make_config


def issue(number, body, user="alice"):
    return {
        "number": number,
        "title": f"Issue {number}",
        "body": body,
        "user": {"login": user},
        "updated_at": github_time(utcnow()),
        "html_url": f"https://github.com/octo/repo/issues/{number}",
    }


@pytest_asyncio.fixture
async def app(tmp_path, db_service, fake_github):
    config = make_config(tmp_path)
    return MentionBotApp(config, db_service=db_service, github_service=fake_github)


class TestDetectionCycle:
    """One scan, dispatch and watermark update."""

    async def test_issue_mention_end_to_end(self, app, fake_github):
        """Test a new issue mention gets one reply and leaves the backlog."""
        fake_github.issues = [issue(42, "@claude implement X")]

        assert await app.run_detection_cycle() is True

        assert len(fake_github.comments) == 1
        number, body = fake_github.comments[0]
        assert number == 42
        assert "@alice" in body
        assert body.startswith("✅")
        assert await app.store.get_unprocessed_mentions() == []
        assert app.last_summary.succeeded == 1

    async def test_second_cycle_does_not_repeat(self, app, fake_github):
        """Test unchanged content is not processed twice."""
        fake_github.issues = [issue(42, "@claude implement X")]

        await app.run_detection_cycle()
        await app.run_detection_cycle()
        assert len(fake_github.comments) == 1

    async def test_watermark_advances_to_cycle_start(self, app):
        """Test a successful cycle moves the watermark to when it started."""
        before = utcnow()
        await app.run_detection_cycle()
        after = utcnow()

        assert before <= app.detector.get_last_check_time() <= after

    async def test_watermark_unchanged_after_failure(self, app, fake_github):
        """Test a failed scan leaves the watermark where it was."""
        watermark = utcnow() - timedelta(minutes=10)
        app.detector.update_last_check_time(watermark)
        fake_github.fail_with = GitHubAPIError("unavailable", status_code=503)

        assert await app.run_detection_cycle() is False
        assert app.detector.get_last_check_time() == watermark

    async def test_cycle_skipped_while_draining(self, app, fake_github):
        """Test no new cycle starts while a batch is being processed."""
        fake_github.issues = [issue(42, "@claude implement X")]
        app.dispatcher.is_draining = True

        assert await app.run_detection_cycle() is False
        assert fake_github.comments == []
        assert app.detector._last_check_time is None

    async def test_backlog_retried(self, app, fake_github):
        """Test unprocessed history from an earlier run is picked up."""
        await app.store.record_mention("issue_comment", 77, "bob", "@claude review this", parent_id=5)

        await app.run_detection_cycle()
        assert [number for number, _ in fake_github.comments] == [5]
        assert "@bob" in fake_github.comments[0][1]

    async def test_budget_exceeded_answered_and_closed(self, tmp_path, db_service, fake_github):
        """Test an over-budget mention gets one mention-again reply and is not retried."""
        config = make_config(tmp_path, claude={"daily_token_limit": 1000})
        app = MentionBotApp(config, db_service=db_service, github_service=fake_github)
        fake_github.issues = [issue(42, "@claude implement X")]

        assert await app.run_detection_cycle() is True
        await app.run_detection_cycle()

        assert len(fake_github.comments) == 1
        assert "mention me again" in fake_github.comments[0][1]
        assert await app.store.get_unprocessed_mentions() == []

    async def test_success_with_failed_reply_not_rerun(self, tmp_path, db_service, fake_github):
        """Test a run whose reply failed is marked processed even when failures are kept."""
        config = make_config(tmp_path, processing={"mark_failed_as_processed": False})
        app = MentionBotApp(config, db_service=db_service, github_service=fake_github)
        fake_github.issues = [issue(42, "@claude implement X")]

        async def reject(number, body):
            raise GitHubAPIError("comment rejected", status_code=502)

        fake_github.add_issue_comment = reject
        await app.run_detection_cycle()

        assert app.last_summary.succeeded == 1
        assert await app.store.get_unprocessed_mentions() == []


class TestBackups:
    """Snapshots and retention."""

    async def test_run_backup_writes_snapshot(self, app):
        path = await app.run_backup()

        assert path is not None
        assert path.parent == app.backup_dir
        assert path.name.startswith("mention_tracker_")
        assert path.stat().st_size > 0

    async def test_retention_deletes_only_old_files(self, app):
        """Test a 7-day window removes exactly the snapshots older than 7 days."""
        now = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
        app.backup_dir.mkdir(parents=True)
        files = []
        for age in range(10):
            path = app.backup_dir / f"mention_tracker_{age}.db"
            path.write_bytes(b"")
            mtime = (now - timedelta(days=age, hours=12)).timestamp()
            os.utime(path, (mtime, mtime))
            files.append(path)
        unrelated = app.backup_dir / "keep.txt"
        unrelated.write_text("x")

        deleted = app.cleanup_old_backups(retention_days=7, now=now)

        assert sorted(p.name for p in deleted) == ["mention_tracker_7.db", "mention_tracker_8.db", "mention_tracker_9.db"]
        assert [p.exists() for p in files] == [True] * 7 + [False] * 3
        assert unrelated.exists()

    def test_backup_file_name(self):
        at = datetime(2024, 5, 1, 2, 0, 0, 123456, tzinfo=timezone.utc)
        assert backup_file_name(at) == "mention_tracker_2024-05-01T02-00-00-123456+00-00.db"


class TestLifecycle:
    def test_invalid_cron_expression(self):
        with pytest.raises(ConfigurationError):
            build_cron_trigger("every five minutes", "detection")

    def test_valid_cron_expression(self):
        trigger = build_cron_trigger("*/5 * * * *", "detection")
        assert str(trigger.timezone) == "UTC"

    async def test_start_rejects_invalid_schedule(self, tmp_path, db_service, fake_github):
        """Test a bad schedule fails start and leaves the app stopped."""
        config = make_config(tmp_path, cron={"detection_interval": "bogus"})
        app = MentionBotApp(config, db_service=db_service, github_service=fake_github)

        with pytest.raises(ConfigurationError):
            await app.start()
        assert app.state == AppState.STOPPED

    async def test_start_then_stop_twice(self, app, fake_github):
        """Test stop is idempotent and releases resources."""
        await app.start()
        assert app.is_running
        assert app.scheduler is not None

        await app.stop()
        await app.stop()

        assert app.state == AppState.STOPPED
        assert app.scheduler is None
        assert fake_github.closed

    async def test_stop_when_never_started(self, app, fake_github):
        await app.stop()
        assert app.state == AppState.STOPPED
        assert not fake_github.closed

    async def test_get_status(self, app):
        await app.store.update_daily_stats(new_mentions=2, api_calls=1)

        status = await app.get_status()

        assert status["state"] == "stopped"
        assert status["repository"] == "octo/repo"
        assert status["today_stats"]["new_mentions"] == 2
        assert status["configuration"]["max_concurrent_executions"] == 1
        assert status["running_executions"] == 0
