"""Exception hierarchy for the mention bot."""

from typing import Optional


class MentionBotError(Exception):
    """Base class for all mention bot errors."""


class ConfigurationError(MentionBotError):
    """Raised when configuration is missing or invalid."""


class GitHubAPIError(MentionBotError):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidResourceURL(MentionBotError, ValueError):
    """Raised when an issue or pull request number cannot be extracted from a URL."""
