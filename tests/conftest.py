"""Shared fixtures for the mention bot tests."""

import os
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio

from mention_bot.config import Config
from mention_bot.services.change_store import ChangeStore
from mention_bot.services.database import DatabaseService
from mention_bot.services.github_service import GitHubService, parse_github_timestamp

PROMPT_TEMPLATE = "Request from {{USER_NAME}} in {{REPOSITORY}}: {{USER_REQUEST}} ({{CONTEXT_URL}})\n"


def write_script(path: Path, body: str) -> Path:
    """Create an executable shell script standing in for the Claude CLI."""
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_config(tmp_path: Path, cli_body: str = "cat > /dev/null\nexit 0", **sections: dict) -> Config:
    """Build a Config pointing at temporary directories and a fake CLI."""
    target = tmp_path / "target-project"
    target.mkdir(exist_ok=True)
    prompts = tmp_path / "prompts"
    prompts.mkdir(exist_ok=True)
    for name in ("issue", "issue_comment", "pr", "pr_comment"):
        (prompts / f"{name}.txt").write_text(PROMPT_TEMPLATE)

    cli = write_script(tmp_path / "fake-claude", cli_body)

    raw: dict[str, Any] = {
        "github": {"token": "ghp_test", "owner": "octo", "repo": "repo"},
        "claude": {"api_key": "sk-test", "cli_path": str(cli), "timeout_seconds": 5},
        "project": {"target_path": str(target), "prompts_dir": str(prompts)},
        "database": {"path": str(tmp_path / "bot.db"), "backup_dir": str(tmp_path / "backups")},
        "logging": {"file": None},
        "processing": {"inter_mention_delay": 0},
    }
    for section, values in sections.items():
        raw.setdefault(section, {}).update(values)
    return Config(**raw)


def github_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeGitHub:
    """In-memory stand-in for GitHubService."""

    repository = "octo/repo"
    extract_issue_number = staticmethod(GitHubService.extract_issue_number)
    extract_pull_request_number = staticmethod(GitHubService.extract_pull_request_number)

    def __init__(self):
        self.issues: list[dict] = []
        self.issue_comments: list[dict] = []
        self.pulls: list[dict] = []
        self.pr_comments: list[dict] = []
        self.details: dict[int, dict] = {}
        self.comments: list[tuple[int, str]] = []
        self.fail_with: Optional[Exception] = None
        self.closed = False

    @staticmethod
    def _since(items: list[dict], since: datetime) -> list[dict]:
        return [item for item in items if parse_github_timestamp(item["updated_at"]) > since]

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def get_issues_since(self, since):
        self._maybe_fail()
        return self._since(self.issues, since)

    async def get_issue_comments_since(self, since):
        self._maybe_fail()
        return self._since(self.issue_comments, since)

    async def get_pull_requests_since(self, since):
        self._maybe_fail()
        return self._since(self.pulls, since)

    async def get_pull_request_comments_since(self, since):
        self._maybe_fail()
        return self._since(self.pr_comments, since)

    async def get_issue(self, number):
        return self.details.get(number, {"title": f"Issue {number}", "body": "", "labels": [], "state": "open"})

    async def get_pull_request(self, number):
        return self.details.get(
            number,
            {"title": f"PR {number}", "body": "", "state": "open", "base": {"ref": "main"}, "head": {"ref": "feature"}},
        )

    async def add_issue_comment(self, number, body):
        self.comments.append((number, body))
        return {"id": len(self.comments)}

    async def add_pull_request_comment(self, number, body):
        self.comments.append((number, body))
        return {"id": len(self.comments)}

    async def get_repository_info(self):
        return {"full_name": self.repository}

    async def close(self):
        self.closed = True


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest_asyncio.fixture
async def db_service(tmp_path):
    db = DatabaseService(tmp_path / "bot.db")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(db_service):
    return ChangeStore(db_service, ["@claude", "@claude-code"])


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep developer environment variables out of config tests."""
    for name in list(os.environ):
        if name.startswith(("GITHUB_", "CLAUDE_", "MENTION_")):
            monkeypatch.delenv(name, raising=False)
