"""Parse the assistant command out of mention text."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .models import MentionEvent


class ActionType(Enum):
    """Verbs recognized right after the mention."""

    IMPLEMENT = "implement"
    REVIEW = "review"
    ANALYZE = "analyze"
    IMPROVE = "improve"
    TEST = "test"
    HELP = "help"
    FIX = "fix"
    CREATE = "create"
    BUILD = "build"


# Rough token cost per action, used against the daily budget
TOKEN_ESTIMATES = {
    ActionType.IMPLEMENT: 5000,
    ActionType.REVIEW: 3000,
    ActionType.ANALYZE: 2000,
    ActionType.IMPROVE: 2500,
    ActionType.TEST: 2000,
    ActionType.HELP: 0,
}
DEFAULT_TOKEN_ESTIMATE = 1000
DEFAULT_MENTION_PATTERNS = ("@claude", "@claude-code")


@dataclass
class ClaudeCommand:
    """Parsed request addressed to the assistant."""

    action: ActionType
    target: str  # "issue" or "pr"
    target_number: int
    parameters: str
    user: str

    @property
    def estimated_tokens(self) -> int:
        return TOKEN_ESTIMATES.get(self.action, DEFAULT_TOKEN_ESTIMATE)


class CommandRouter:
    """Parse ``<handle> <action> <parameters>`` requests from mentions."""

    def __init__(self, mention_patterns: Iterable[str] = DEFAULT_MENTION_PATTERNS):
        # Longest first so "@claude-code" is not consumed as "@claude"
        handles = sorted({p.strip() for p in mention_patterns if p and p.strip()}, key=len, reverse=True)
        if not handles:
            raise ValueError("At least one mention pattern is required")
        handle_pattern = "|".join(re.escape(handle) for handle in handles)
        self.mention_pattern = re.compile(rf"(?:{handle_pattern})\s+(.+)", re.IGNORECASE | re.DOTALL)
        action_names = "|".join(action.value for action in ActionType)
        self.action_pattern = re.compile(rf"^({action_names})\b", re.IGNORECASE)

    def parse_command(self, mention: MentionEvent) -> ClaudeCommand:
        """Parse the command for a mention.

        Text that does not follow the handle, or does not start with a known
        verb, is treated as the parameters of a ``help`` request.
        """
        target = "pr" if mention.type.is_pull_request else "issue"
        match = self.mention_pattern.search(mention.content or "")

        if not match:
            return ClaudeCommand(
                action=ActionType.HELP,
                target=target,
                target_number=mention.target_number,
                parameters="",
                user=mention.user,
            )

        command_text = match.group(1).strip()
        action_match = self.action_pattern.match(command_text)
        if action_match:
            action = ActionType(action_match.group(1).lower())
            parameters = command_text[action_match.end():].strip()
        else:
            action = ActionType.HELP
            parameters = command_text

        return ClaudeCommand(
            action=action,
            target=target,
            target_number=mention.target_number,
            parameters=parameters,
            user=mention.user,
        )
