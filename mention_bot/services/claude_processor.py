"""Run the Claude Code CLI for a mention and report the outcome on GitHub."""

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..command_router import ClaudeCommand, CommandRouter
from ..config import Config
from ..errors import GitHubAPIError
from ..models import ExecutionKind, ExecutionResult, MentionEvent
from ..prompt_manager import PromptManager
from .change_store import ChangeStore
from .github_service import GitHubService

logger = logging.getLogger(__name__)

# Streaming JSON output, non-interactive, no permission prompts
CLAUDE_ARGS = (
    "--output-format",
    "stream-json",
    "--print",
    "--dangerously-skip-permissions",
    "--verbose",
)
TERMINATE_GRACE_SECONDS = 5.0
PERMISSION_MARKERS = ("permission", "権限")
PERMISSION_HINT = "Permission error detected. Please run manually: claude --dangerously-skip-permissions"


class ClaudeProcessor:
    """Handle a single mention: validate, build the prompt, run the CLI, reply.

    ``running_executions`` counts CLI runs in progress on this instance and is
    checked against ``max_concurrent_executions`` before each run.
    """

    def __init__(
        self,
        config: Config,
        github_service: GitHubService,
        change_store: ChangeStore,
        prompt_manager: Optional[PromptManager] = None,
        command_router: Optional[CommandRouter] = None,
    ):
        """Initialize the processor.

        Args:
            config: Bot configuration
            github_service: GitHub API service used for details and replies
            change_store: Store used for the daily token budget
            prompt_manager: Template loader (default: from ``project.prompts_dir``)
            command_router: Mention command parser
        """
        self.config = config
        self.github = github_service
        self.store = change_store
        self.prompt_manager = prompt_manager or PromptManager(config.project.resolved_prompts_dir)
        self.command_router = command_router or CommandRouter(config.mention.patterns)
        self.max_concurrent_executions = config.processing.max_concurrent_executions
        self.timeout_seconds = config.claude.timeout_seconds
        self.running_executions = 0

    @property
    def target_path(self) -> Path:
        return self.config.project.resolved_target_path

    @property
    def cli_path(self) -> str:
        return self.config.claude.cli_path

    async def process_mention(self, mention: MentionEvent) -> ExecutionResult:
        """Process one mention and post exactly one reply for it.

        Returns a SKIPPED result without replying when the execution ceiling
        is reached. Store errors propagate; everything else is converted into
        a result and a reply.
        """
        if self.running_executions >= self.max_concurrent_executions:
            logger.info(
                "Execution limit reached (%d/%d), deferring %s #%s",
                self.running_executions,
                self.max_concurrent_executions,
                mention.type.value,
                mention.id,
            )
            return ExecutionResult(ExecutionKind.SKIPPED, "Concurrent execution limit reached")

        self.running_executions += 1
        try:
            logger.info("Processing mention: %s #%s by @%s", mention.type.value, mention.id, mention.user)
            return await self._handle(mention)

        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.error("Error processing mention %s #%s: %s", mention.type.value, mention.id, e, exc_info=True)
            await self._respond_safely(mention, self._error_message(mention.user, str(e)))
            return ExecutionResult(ExecutionKind.ERROR, str(e))
        finally:
            self.running_executions -= 1

    async def _handle(self, mention: MentionEvent) -> ExecutionResult:
        if not self.validate_target_project():
            await self.respond(
                mention,
                f"❌ @{mention.user} Target project directory not found: `{self.target_path}`\n\n"
                "Please check your TARGET_PROJECT_PATH configuration.",
            )
            return ExecutionResult(ExecutionKind.CONFIG_ERROR, f"Target project not found: {self.target_path}")

        command = self.command_router.parse_command(mention)
        estimated_tokens = command.estimated_tokens

        if not await self.can_use_tokens(estimated_tokens):
            await self.respond(
                mention,
                f"⚠️ @{mention.user} Daily token limit reached, so this request was not run. "
                "Please mention me again tomorrow (the limit resets at 00:00 UTC).",
            )
            return ExecutionResult(ExecutionKind.BUDGET_EXCEEDED, "Daily token limit reached")

        if self.config.claude.api_key is None:
            await self.respond(
                mention,
                f"⚠️ @{mention.user} Claude Code is currently unavailable. "
                "Please ensure CLAUDE_API_KEY is configured properly.\n\n"
                f"**Configuration:**\n- Claude CLI: `{self.cli_path}`\n- Target Project: `{self.target_path}`",
            )
            return ExecutionResult(ExecutionKind.UNAVAILABLE, "CLAUDE_API_KEY is not configured")

        prompt_file = self.prompt_manager.get_prompt_file_for_mention_type(mention.type)
        if not self.prompt_manager.prompt_exists(prompt_file):
            logger.warning("Prompt file not found: %s, replying with usage help", prompt_file)
            await self.respond(mention, self._help_message(mention))
            return ExecutionResult(ExecutionKind.HELP, f"Prompt file not found: {prompt_file}")

        template = self.prompt_manager.load_prompt(prompt_file)
        variables = await self.build_prompt_variables(mention, command)
        prompt = self.prompt_manager.process_prompt(template, variables)

        result = await self.run_claude_command(prompt)

        if result.success:
            await self.record_token_usage(estimated_tokens)
            logger.info(
                "Mention processed successfully: %s #%s action=%s tokens=%d",
                mention.type.value,
                mention.id,
                command.action.value,
                estimated_tokens,
            )
        else:
            logger.warning(
                "Claude execution failed for %s #%s (%s): %s",
                mention.type.value,
                mention.id,
                result.kind.value,
                result.message,
            )

        # The CLI already ran; a failed reply must not turn the outcome into an error
        try:
            await self.respond(mention, self._result_message(mention.user, result, prompt_file))
        except GitHubAPIError as e:
            logger.error(
                "Failed to post %s reply for %s #%s: %s", result.kind.value, mention.type.value, mention.id, e
            )
        return result

    def validate_target_project(self) -> bool:
        """Check that the working directory for the CLI exists."""
        target = self.target_path
        if not target.is_dir():
            logger.error("Target project path does not exist: %s", target)
            return False

        if not (target / ".git").exists():
            # Claude Code may still work outside a git checkout
            logger.warning("Target project is not a git repository: %s", target)

        return True

    async def can_use_tokens(self, estimated_tokens: int) -> bool:
        stats = await self.store.get_today_stats()
        current_usage = stats.tokens_used if stats else 0
        return current_usage + estimated_tokens <= self.config.claude.daily_token_limit

    async def record_token_usage(self, tokens_used: int) -> None:
        if tokens_used:
            await self.store.update_daily_stats(tokens_used=tokens_used, checks=0)

    async def build_prompt_variables(self, mention: MentionEvent, command: ClaudeCommand) -> dict[str, str]:
        """Values for the ``{{NAME}}`` placeholders of a template."""
        repository = self.github.repository
        kind = "pull" if mention.type.is_pull_request else "issues"
        variables = {
            "USER_REQUEST": command.parameters or mention.content,
            "CONTEXT_URL": mention.url or f"https://github.com/{repository}/{kind}/{command.target_number}",
            "CONTEXT_TITLE": mention.title or "",
            "USER_NAME": command.user,
            "USER": command.user,
            "REPOSITORY": repository,
            "REPO_NAME": repository,
            "MENTION_TYPE": mention.type.value,
            "PROJECT_PATH": str(self.target_path),
        }

        try:
            if mention.type.is_pull_request:
                pr = await self.github.get_pull_request(command.target_number)
                variables.update(
                    {
                        "PR_NUMBER": str(command.target_number),
                        "PR_TITLE": pr.get("title") or "",
                        "PR_BODY": pr.get("body") or "",
                        "PR_STATE": pr.get("state") or "",
                        "PR_BASE_BRANCH": (pr.get("base") or {}).get("ref", ""),
                        "PR_HEAD_BRANCH": (pr.get("head") or {}).get("ref", ""),
                    }
                )
                title = variables["PR_TITLE"]
            else:
                issue = await self.github.get_issue(command.target_number)
                variables.update(
                    {
                        "ISSUE_NUMBER": str(command.target_number),
                        "ISSUE_TITLE": issue.get("title") or "",
                        "ISSUE_BODY": issue.get("body") or "",
                        "ISSUE_LABELS": ", ".join(label["name"] for label in issue.get("labels") or []),
                        "ISSUE_STATE": issue.get("state") or "",
                    }
                )
                title = variables["ISSUE_TITLE"]

            if not variables["CONTEXT_TITLE"]:
                variables["CONTEXT_TITLE"] = title

        except GitHubAPIError as e:
            logger.warning("Failed to fetch details for #%s: %s", command.target_number, e)

        return variables

    async def run_claude_command(self, prompt: str) -> ExecutionResult:
        """Run the CLI in the target project with ``prompt`` on stdin.

        Returns:
            A SUCCESS result on exit code 0, otherwise a classified failure.
        """
        cmd = [self.cli_path, *CLAUDE_ARGS]
        env = dict(os.environ)
        if self.config.claude.api_key is not None:
            api_key = self.config.claude.api_key.get_secret_value()
            env["CLAUDE_API_KEY"] = api_key
            env["ANTHROPIC_API_KEY"] = api_key

        logger.debug("Running Claude CLI: %s (cwd=%s)", " ".join(cmd), self.target_path)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.target_path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            logger.error("Claude CLI not found: %s", self.cli_path)
            return ExecutionResult(
                ExecutionKind.NOT_FOUND,
                f"Claude CLI not found at: {self.cli_path}. Please check CLAUDE_CLI_PATH setting.",
            )
        except OSError as e:
            logger.error("Failed to spawn Claude CLI %s: %s", self.cli_path, e)
            return ExecutionResult(ExecutionKind.FAILURE, str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            logger.error("Claude CLI timed out after %s seconds", self.timeout_seconds)
            return ExecutionResult(
                ExecutionKind.TIMEOUT,
                f"Command timeout ({self._format_duration(self.timeout_seconds)})",
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        returncode = process.returncode
        self._write_execution_log(stdout, stderr)

        if returncode == 0:
            logger.debug("Claude CLI succeeded: %s", stdout[:500])
            return ExecutionResult(ExecutionKind.SUCCESS, "Execution completed", exit_code=0, stderr=stderr)

        logger.error("Claude CLI failed (exit code %s): %s", returncode, stderr[:1000])
        lowered = stderr.lower()
        if any(marker in lowered for marker in PERMISSION_MARKERS):
            return ExecutionResult(ExecutionKind.PERMISSION, PERMISSION_HINT, exit_code=returncode, stderr=stderr)

        return ExecutionResult(
            ExecutionKind.FAILURE,
            stderr.strip() or f"Exit code: {returncode}",
            exit_code=returncode,
            stderr=stderr,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Claude CLI ignored SIGTERM, killing pid %s", process.pid)
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    def _write_execution_log(self, stdout: str, stderr: str) -> None:
        log_dir = self.config.claude.execution_log_dir
        if not log_dir:
            return

        timestamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        log_file = Path(log_dir).expanduser() / f"claude_execution_{timestamp}.log"
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("w", encoding="utf-8") as f:
                f.write(stdout)
                for line in stderr.splitlines():
                    f.write(f"STDERR: {line}\n")
        except OSError as e:
            logger.warning("Failed to write execution log %s: %s", log_file, e)

    async def respond(self, mention: MentionEvent, message: str) -> None:
        """Post a comment on the issue or PR the mention belongs to."""
        if mention.type.is_pull_request:
            await self.github.add_pull_request_comment(mention.target_number, message)
        else:
            await self.github.add_issue_comment(mention.target_number, message)

    async def _respond_safely(self, mention: MentionEvent, message: str) -> None:
        try:
            await self.respond(mention, message)
        except GitHubAPIError as e:
            logger.error("Failed to post error reply for %s #%s: %s", mention.type.value, mention.id, e)

    def _debug_info(self) -> str:
        return f"**Debug Info:**\n- Target Project: `{self.target_path}`\n- Claude CLI: `{self.cli_path}`"

    def _error_message(self, user: str, error: str) -> str:
        return (
            f"❌ @{user} An error occurred while processing your request:\n\n"
            f"```\n{error}\n```\n\n"
            "Please try again or contact support if the problem persists.\n\n"
            f"{self._debug_info()}"
        )

    def _result_message(self, user: str, result: ExecutionResult, prompt_file: str) -> str:
        if result.kind == ExecutionKind.SUCCESS:
            return (
                f"✅ @{user} Claude Code execution completed.\n\n"
                f"**Working Directory:** `{self.target_path}`\n"
                f"**Prompt File:** `{prompt_file}`"
            )
        if result.kind == ExecutionKind.TIMEOUT:
            return (
                f"⏱️ @{user} Claude Code execution timed out and was stopped "
                f"({self._format_duration(self.timeout_seconds)}).\n\n{self._debug_info()}"
            )
        if result.kind == ExecutionKind.PERMISSION:
            return f"🔒 @{user} Claude Code execution failed with a permission error.\n\n{result.message}\n\n{self._debug_info()}"
        if result.kind == ExecutionKind.NOT_FOUND:
            return f"❌ @{user} Claude Code executable not found.\n\n{result.message}\n\n{self._debug_info()}"
        return self._error_message(user, f"Claude execution failed: {result.message}")

    def _help_message(self, mention: MentionEvent) -> str:
        subject = "PR" if mention.type.is_pull_request else "issue"
        available = ", ".join(self.prompt_manager.get_available_prompts()) or "none"
        prompt_file = self.prompt_manager.get_prompt_file_for_mention_type(mention.type)
        return f"""📖 @{mention.user} **Claude Code Usage**

**Available Commands:**
- `@claude implement [details]` - Implement the {subject}
- `@claude review [focus]` - Review code with specific focus
- `@claude analyze [aspect]` - Analyze code or requirements
- `@claude improve [area]` - Suggest improvements
- `@claude test [type]` - Generate tests

**Project Information:**
- **Target Project:** `{self.target_path}`
- **Claude CLI:** `{self.cli_path}`
- **Prompt File:** `{prompt_file}`
- **Available Prompts:** {available}"""

    @staticmethod
    def _format_duration(seconds: float) -> str:
        if seconds >= 60 and seconds % 60 == 0:
            minutes = int(seconds // 60)
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        return f"{seconds:g} seconds"
