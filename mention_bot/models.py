"""In-memory data structures passed between the scanner and the dispatch loop."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class MentionType(str, Enum):
    """Kinds of GitHub content that can carry a mention."""

    ISSUE = "issue"
    ISSUE_COMMENT = "issue_comment"
    PR = "pr"
    PR_COMMENT = "pr_comment"

    @property
    def is_pull_request(self) -> bool:
        return self in (MentionType.PR, MentionType.PR_COMMENT)

    @property
    def is_comment(self) -> bool:
        return self in (MentionType.ISSUE_COMMENT, MentionType.PR_COMMENT)


@dataclass
class MentionEvent:
    """A detected mention, consumed once by the dispatch loop."""

    type: MentionType
    id: int
    content: str
    user: str
    detected_at: datetime
    parent_id: Optional[int] = None
    processed: bool = False
    url: Optional[str] = None
    title: Optional[str] = None
    mention_history_id: Optional[int] = None
    # Other unprocessed history rows for the same (type, id), folded in by the merge
    duplicate_history_ids: list[int] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, int]:
        return (self.type.value, self.id)

    @property
    def target_number(self) -> int:
        """Issue or PR number that replies are posted to."""
        return self.parent_id if self.parent_id is not None else self.id

    @property
    def history_ids(self) -> list[int]:
        ids = [self.mention_history_id] if self.mention_history_id is not None else []
        return ids + [i for i in self.duplicate_history_ids if i not in ids]


class ExecutionKind(str, Enum):
    """Outcome classification of one mention."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    HELP = "help"
    CONFIG_ERROR = "config_error"
    UNAVAILABLE = "unavailable"
    BUDGET_EXCEEDED = "budget_exceeded"
    FAILURE = "failure"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE_KINDS


_FAILURE_KINDS = frozenset(
    {
        ExecutionKind.CONFIG_ERROR,
        ExecutionKind.FAILURE,
        ExecutionKind.PERMISSION,
        ExecutionKind.TIMEOUT,
        ExecutionKind.NOT_FOUND,
        ExecutionKind.ERROR,
    }
)


@dataclass
class ExecutionResult:
    """Tagged result of handling one mention."""

    kind: ExecutionKind
    message: str = ""
    exit_code: Optional[int] = None
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.kind == ExecutionKind.SUCCESS


@dataclass
class BatchSummary:
    """Counts for one drained batch."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[tuple[MentionEvent, ExecutionResult]] = field(default_factory=list)
