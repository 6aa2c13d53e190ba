"""Tests for the mention scanner."""

from datetime import datetime, timedelta, timezone

import pytest

from mention_bot.errors import GitHubAPIError
from mention_bot.models import MentionEvent, MentionType
from mention_bot.services.mention_detector import MentionDetector, event_from_history, merge_mentions

from .conftest import github_time

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=3)


def issue(number, body, user="alice", updated=T1):
    return {
        "number": number,
        "title": f"Issue {number}",
        "body": body,
        "user": {"login": user},
        "updated_at": github_time(updated),
        "html_url": f"https://github.com/octo/repo/issues/{number}",
    }


def issue_comment(comment_id, issue_number, body, user="bob", updated=T1):
    return {
        "id": comment_id,
        "issue_url": f"https://api.github.com/repos/octo/repo/issues/{issue_number}",
        "body": body,
        "user": {"login": user},
        "updated_at": github_time(updated),
        "html_url": f"https://github.com/octo/repo/issues/{issue_number}#issuecomment-{comment_id}",
    }


def pr_comment(comment_id, pr_number, body, user="dave", updated=T1):
    return {
        "id": comment_id,
        "pull_request_url": f"https://api.github.com/repos/octo/repo/pulls/{pr_number}",
        "body": body,
        "user": {"login": user},
        "updated_at": github_time(updated),
    }


@pytest.fixture
def detector(fake_github, store):
    return MentionDetector(fake_github, store)


class TestWatermark:
    def test_defaults_to_one_hour_ago(self, detector):
        """Test the cold-start watermark is about an hour back."""
        age = datetime.now(timezone.utc) - detector.get_last_check_time()
        assert timedelta(minutes=59) < age < timedelta(minutes=61)

    def test_update_never_moves_back(self, detector):
        """Test the watermark is monotonic."""
        detector.update_last_check_time(T1)
        detector.update_last_check_time(T0)
        assert detector.get_last_check_time() == T1


class TestDetectNewMentions:
    """Scanning all four item classes."""

    async def test_issue_mention_detected_and_recorded(self, detector, fake_github, store):
        """Test a new issue with a mention yields one event and one history row."""
        fake_github.issues = [issue(42, "@claude implement X"), issue(43, "no mention here")]

        mentions = await detector.detect_new_mentions(T0)

        assert len(mentions) == 1
        event = mentions[0]
        assert (event.type, event.id, event.user) == (MentionType.ISSUE, 42, "alice")
        assert event.title == "Issue 42"
        assert event.url == "https://github.com/octo/repo/issues/42"

        pending = await store.get_unprocessed_mentions()
        assert [p.id for p in pending] == [event.mention_history_id]

    async def test_unchanged_content_not_reported_twice(self, detector, fake_github):
        """Test a second scan of identical content finds nothing."""
        fake_github.issues = [issue(42, "@claude implement X")]

        assert len(await detector.detect_new_mentions(T0)) == 1
        assert await detector.detect_new_mentions(T0) == []

    async def test_edited_content_reported_again(self, detector, fake_github):
        """Test editing a mention re-triggers it."""
        fake_github.issues = [issue(42, "@claude implement X")]
        await detector.detect_new_mentions(T0)

        fake_github.issues = [issue(42, "@claude implement X and Y")]
        mentions = await detector.detect_new_mentions(T0)
        assert [m.id for m in mentions] == [42]

    async def test_comments_tagged_with_parent(self, detector, fake_github):
        """Test comment events carry their issue or PR number."""
        fake_github.issue_comments = [issue_comment(1001, 7, "hey @Claude help")]
        fake_github.pr_comments = [pr_comment(2002, 9, "@claude-code fix this line")]

        mentions = await detector.detect_new_mentions(T0)

        by_type = {m.type: m for m in mentions}
        assert by_type[MentionType.ISSUE_COMMENT].parent_id == 7
        assert by_type[MentionType.ISSUE_COMMENT].target_number == 7
        assert by_type[MentionType.PR_COMMENT].parent_id == 9

    async def test_pull_requests_before_since_ignored(self, detector, fake_github):
        """Test only PRs updated after the watermark are considered."""
        old = T0 - timedelta(days=1)
        fake_github.pulls = [
            {"number": 5, "title": "New", "body": "@claude review", "user": {"login": "e"}, "updated_at": github_time(T1)},
            {"number": 4, "title": "Old", "body": "@claude review", "user": {"login": "e"}, "updated_at": github_time(old)},
        ]

        mentions = await detector.detect_new_mentions(T0)
        assert [(m.type, m.id) for m in mentions] == [(MentionType.PR, 5)]

    async def test_stats_updated_once_per_scan(self, detector, fake_github, store):
        """Test one scan counts as one check and one API call."""
        fake_github.issues = [issue(1, "@claude a"), issue(2, "@claude b")]
        fake_github.issue_comments = [issue_comment(10, 1, "@claude c")]

        await detector.detect_new_mentions(T0)

        stats = await store.get_today_stats()
        assert (stats.total_checks, stats.api_calls, stats.new_mentions) == (1, 1, 3)

    async def test_api_error_propagates_without_stats(self, detector, fake_github, store):
        """Test a failed fetch aborts the scan."""
        fake_github.fail_with = GitHubAPIError("boom", status_code=502)

        with pytest.raises(GitHubAPIError):
            await detector.detect_new_mentions(T0)
        assert await store.get_today_stats() is None


class TestMerge:
    """Union of fresh mentions and the backlog."""

    def make_event(self, type_, id_, history_id):
        return MentionEvent(
            type=type_, id=id_, content="@claude x", user="u", detected_at=T0, mention_history_id=history_id
        )

    def test_union_keyed_by_type_and_id(self):
        """Test duplicates collapse and new events come first."""
        new = [self.make_event(MentionType.ISSUE, 42, 3)]
        backlog = [
            self.make_event(MentionType.PR, 8, 1),
            self.make_event(MentionType.ISSUE, 42, 2),
            self.make_event(MentionType.ISSUE, 42, 3),
        ]

        merged = merge_mentions(new, backlog)

        assert [m.key for m in merged] == [("issue", 42), ("pr", 8)]
        assert merged[0].history_ids == [3, 2]

    def test_same_id_different_type_kept(self):
        """Test an issue and a PR with the same number are separate."""
        merged = merge_mentions([self.make_event(MentionType.ISSUE, 1, 1)], [self.make_event(MentionType.PR, 1, 2)])
        assert len(merged) == 2

    async def test_event_from_history(self, store):
        """Test a history row round-trips into an event."""
        history_id = await store.record_mention(MentionType.PR_COMMENT, 5, "erin", "@claude nit", parent_id=12)
        (entry,) = await store.get_unprocessed_mentions()

        event = event_from_history(entry)
        assert (event.type, event.id, event.parent_id, event.user) == (MentionType.PR_COMMENT, 5, 12, "erin")
        assert event.mention_history_id == history_id
        assert event.detected_at.tzinfo is not None
