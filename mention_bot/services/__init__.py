"""Service layer for change tracking, GitHub access and mention dispatch."""

from .change_store import ChangeStore
from .claude_processor import ClaudeProcessor
from .database import DatabaseService
from .dispatcher import MentionDispatcher
from .github_service import GitHubService
from .mention_detector import MentionDetector, event_from_history, merge_mentions

__all__ = [
    "ChangeStore",
    "ClaudeProcessor",
    "DatabaseService",
    "GitHubService",
    "MentionDetector",
    "MentionDispatcher",
    "event_from_history",
    "merge_mentions",
]
