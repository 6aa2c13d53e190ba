"""GitHub REST API service with token authentication."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from ..errors import GitHubAPIError, InvalidResourceURL

logger = logging.getLogger(__name__)

ISSUE_URL_PATTERN = re.compile(r"/issues/(\d+)$")
PULL_URL_PATTERN = re.compile(r"/pulls/(\d+)$")


def format_github_timestamp(value: datetime) -> str:
    """Render a datetime the way GitHub's ``since`` parameter expects it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_github_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp from the API into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GitHubService:
    """GitHub API interactions for a single repository."""

    GITHUB_API_BASE = "https://api.github.com"
    PER_PAGE = 100

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        api_base: Optional[str] = None,
        max_pages: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize GitHub service.

        Args:
            token: Personal access token.
            owner: Repository owner.
            repo: Repository name.
            api_base: API root URL (default: public GitHub).
            max_pages: Upper bound on pages followed per listing.
            client: Pre-built HTTP client (mainly for tests).
        """
        self.owner = owner
        self.repo = repo
        self.api_base = (api_base or self.GITHUB_API_BASE).rstrip("/")
        self.max_pages = max_pages
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._client = client or httpx.AsyncClient(timeout=30.0)
        logger.debug("GitHubService initialized for %s", self.repository)

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.api_base}{url}"

        try:
            response = await self._client.request(method, url, headers=self._headers, params=params, json=json)
            response.raise_for_status()
            return response

        except httpx.HTTPStatusError as e:
            logger.error("GitHub API %s %s failed (HTTP %d): %s", method, url, e.response.status_code, e.response.text)
            raise GitHubAPIError(
                f"GitHub API {method} {url} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("GitHub API %s %s failed: %s", method, url, e)
            raise GitHubAPIError(f"GitHub API {method} {url} failed: {e}") from e

    async def _paginate(
        self,
        path: str,
        params: dict[str, Any],
        stop_when: Optional[Callable[[list[dict[str, Any]]], bool]] = None,
    ) -> list[dict[str, Any]]:
        """Collect items across pages by following ``Link: rel="next"``.

        ``stop_when`` is called with each page; a true result ends the
        listing after that page.
        """
        items: list[dict[str, Any]] = []
        url: Optional[str] = f"{self.api_base}{path}"
        page_params: Optional[dict[str, Any]] = {**params, "per_page": self.PER_PAGE}

        for _ in range(self.max_pages):
            response = await self._request("GET", url, params=page_params)
            page = response.json()
            items.extend(page)

            next_link = response.links.get("next")
            if not next_link or not page or (stop_when is not None and stop_when(page)):
                break
            # The next URL already carries the query string
            url, page_params = next_link["url"], None
        else:
            logger.warning("Stopped paginating %s after %d pages", path, self.max_pages)

        return items

    async def get_issues_since(self, since: datetime) -> list[dict[str, Any]]:
        """Issues (not pull requests) updated since ``since``."""
        data = await self._paginate(
            f"/repos/{self.repository}/issues",
            {"since": format_github_timestamp(since), "state": "all"},
        )
        # The issues endpoint includes pull requests
        issues = [issue for issue in data if "pull_request" not in issue]
        logger.debug("Fetched %d issue(s) since %s", len(issues), since)
        return issues

    async def get_issue_comments_since(self, since: datetime) -> list[dict[str, Any]]:
        """Issue and PR conversation comments updated since ``since``."""
        comments = await self._paginate(
            f"/repos/{self.repository}/issues/comments",
            {"since": format_github_timestamp(since)},
        )
        logger.debug("Fetched %d issue comment(s) since %s", len(comments), since)
        return comments

    async def get_pull_requests_since(self, since: datetime) -> list[dict[str, Any]]:
        """Pull requests updated after ``since``.

        The pulls endpoint has no ``since`` parameter, so the listing is
        sorted by ``updated`` descending, paging stops at the first page that
        reaches ``since``, and the result is filtered on ``updated_at``.
        """
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        def is_newer(pr: dict[str, Any]) -> bool:
            return parse_github_timestamp(pr["updated_at"]) > since

        data = await self._paginate(
            f"/repos/{self.repository}/pulls",
            {"state": "all", "sort": "updated", "direction": "desc"},
            stop_when=lambda page: not is_newer(page[-1]),
        )
        pull_requests = [pr for pr in data if is_newer(pr)]
        logger.debug("Fetched %d pull request(s) since %s", len(pull_requests), since)
        return pull_requests

    async def get_pull_request_comments_since(self, since: datetime) -> list[dict[str, Any]]:
        """Inline review comments updated since ``since``."""
        comments = await self._paginate(
            f"/repos/{self.repository}/pulls/comments",
            {"since": format_github_timestamp(since)},
        )
        logger.debug("Fetched %d PR review comment(s) since %s", len(comments), since)
        return comments

    async def get_issue(self, issue_number: int) -> dict[str, Any]:
        """Get issue details."""
        response = await self._request("GET", f"/repos/{self.repository}/issues/{issue_number}")
        return response.json()

    async def get_pull_request(self, pr_number: int) -> dict[str, Any]:
        """Get pull request details."""
        response = await self._request("GET", f"/repos/{self.repository}/pulls/{pr_number}")
        return response.json()

    async def add_issue_comment(self, issue_number: int, body: str) -> dict[str, Any]:
        """Post a comment on an issue."""
        response = await self._request(
            "POST",
            f"/repos/{self.repository}/issues/{issue_number}/comments",
            json={"body": body},
        )
        logger.info("Issue comment added on #%d (%d chars)", issue_number, len(body))
        return response.json()

    async def add_pull_request_comment(self, pr_number: int, body: str) -> dict[str, Any]:
        """Post a conversation comment on a pull request."""
        # PR conversation comments go through the issues endpoint
        response = await self._request(
            "POST",
            f"/repos/{self.repository}/issues/{pr_number}/comments",
            json={"body": body},
        )
        logger.info("PR comment added on #%d (%d chars)", pr_number, len(body))
        return response.json()

    async def get_repository_info(self) -> dict[str, Any]:
        """Summary of the repository, also used as a connectivity check."""
        response = await self._request("GET", f"/repos/{self.repository}")
        data = response.json()
        return {
            "name": data.get("name"),
            "full_name": data.get("full_name"),
            "description": data.get("description"),
            "language": data.get("language"),
            "stars": data.get("stargazers_count"),
            "forks": data.get("forks_count"),
        }

    @staticmethod
    def extract_issue_number(issue_url: str) -> int:
        """Issue number from an API ``issue_url``."""
        match = ISSUE_URL_PATTERN.search(issue_url or "")
        if not match:
            raise InvalidResourceURL(f"Invalid issue URL: {issue_url}")
        return int(match.group(1))

    @staticmethod
    def extract_pull_request_number(pr_url: str) -> int:
        """Pull request number from an API ``pull_request_url``."""
        match = PULL_URL_PATTERN.search(pr_url or "")
        if not match:
            raise InvalidResourceURL(f"Invalid PR URL: {pr_url}")
        return int(match.group(1))

    async def close(self) -> None:
        await self._client.aclose()
