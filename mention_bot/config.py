"""Configuration management for the mention bot."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator


class GitHubConfig(BaseModel):
    """GitHub repository and API settings."""

    token: SecretStr = Field(..., description="Personal access token for the GitHub API")
    owner: str = Field(..., min_length=1, description="Repository owner")
    repo: str = Field(..., min_length=1, description="Repository name")
    api_base: str = "https://api.github.com"
    max_pages: int = Field(default=10, ge=1, le=100, description="Pages fetched per listing")

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"


class ClaudeConfig(BaseModel):
    """External assistant CLI settings."""

    api_key: Optional[SecretStr] = Field(default=None, description="API key passed to the CLI")
    cli_path: str = "claude"
    daily_token_limit: int = Field(default=45000, ge=0)
    timeout_seconds: float = Field(default=300, gt=0)
    execution_log_dir: Optional[str] = Field(
        default=None, description="Directory for per-execution stdout/stderr logs"
    )


class ProjectConfig(BaseModel):
    """Paths of the project the assistant works on."""

    target_path: str = Field(default=".", description="Working directory for the assistant")
    prompts_dir: str = "./prompts"

    @property
    def resolved_target_path(self) -> Path:
        return Path(self.target_path).expanduser().resolve()

    @property
    def resolved_prompts_dir(self) -> Path:
        return Path(self.prompts_dir).expanduser().resolve()


class DatabaseConfig(BaseModel):
    """Change store settings."""

    path: str = "./mention_tracker.db"
    backup_dir: str = "./backups"
    backup_retention_days: int = Field(default=7, ge=1)


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = "INFO"
    file: Optional[str] = "./logs/claude-bot.log"


class CronConfig(BaseModel):
    """Schedules, as five-field crontab expressions evaluated in UTC."""

    detection_interval: str = "*/5 * * * *"
    backup_interval: str = "0 2 * * *"


class MentionConfig(BaseModel):
    """Mention detection settings."""

    patterns: list[str] = Field(default_factory=lambda: ["@claude", "@claude-code"])

    @field_validator("patterns")
    @classmethod
    def _strip_patterns(cls, value: list[str]) -> list[str]:
        patterns = [p.strip() for p in value if p and p.strip()]
        if not patterns:
            raise ValueError("At least one mention pattern is required")
        return patterns


class ProcessingConfig(BaseModel):
    """Dispatch loop behavior."""

    max_concurrent_executions: int = Field(default=1, ge=1, le=10)
    inter_mention_delay: float = Field(default=2.0, ge=0)
    # When false, failed attempts stay unprocessed and are retried every cycle
    mark_failed_as_processed: bool = True


class SystemConfig(BaseModel):
    """Environment flags."""

    environment: Literal["development", "production"] = "production"
    debug: bool = False


class Config(BaseModel):
    """Root configuration model."""

    github: GitHubConfig
    claude: ClaudeConfig = ClaudeConfig()
    project: ProjectConfig = ProjectConfig()
    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    cron: CronConfig = CronConfig()
    mention: MentionConfig = MentionConfig()
    processing: ProcessingConfig = ProcessingConfig()
    system: SystemConfig = SystemConfig()


# Environment variable -> (section, field)
ENV_VARS = {
    "GITHUB_TOKEN": ("github", "token"),
    "GITHUB_OWNER": ("github", "owner"),
    "GITHUB_REPO": ("github", "repo"),
    "GITHUB_API_BASE": ("github", "api_base"),
    "CLAUDE_API_KEY": ("claude", "api_key"),
    "CLAUDE_CLI_PATH": ("claude", "cli_path"),
    "DAILY_TOKEN_LIMIT": ("claude", "daily_token_limit"),
    "CLAUDE_TIMEOUT_SECONDS": ("claude", "timeout_seconds"),
    "CLAUDE_LOG_DIR": ("claude", "execution_log_dir"),
    "TARGET_PROJECT_PATH": ("project", "target_path"),
    "PROMPTS_DIR": ("project", "prompts_dir"),
    "DATABASE_PATH": ("database", "path"),
    "BACKUP_DIR": ("database", "backup_dir"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
    "DETECTION_INTERVAL": ("cron", "detection_interval"),
    "BACKUP_INTERVAL": ("cron", "backup_interval"),
    "MENTION_PATTERNS": ("mention", "patterns"),
    "MAX_CONCURRENT_EXECUTIONS": ("processing", "max_concurrent_executions"),
    "MARK_FAILED_AS_PROCESSED": ("processing", "mark_failed_as_processed"),
    "ENVIRONMENT": ("system", "environment"),
    "DEBUG": ("system", "debug"),
}


def config_from_env(environ: Optional[dict[str, str]] = None) -> Config:
    """Build configuration from environment variables.

    Only variables that are set are passed on; everything else takes the
    model defaults. ``MENTION_PATTERNS`` is comma separated.
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, dict] = {"github": {}}

    for name, (section, field) in ENV_VARS.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        if field == "patterns":
            value = value.split(",")
        raw.setdefault(section, {})[field] = value

    return Config(**raw)


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration.

    A YAML file is used when it exists; it supports ${VAR_NAME} syntax for
    environment variable expansion. Without one, configuration is read from
    environment variables (and a ``.env`` file, if present).

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    load_dotenv()

    path = Path(config_path)
    if not path.exists():
        return config_from_env()

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    # Expand environment variables in the format ${VAR_NAME}
    def expand_env_vars(obj):
        if isinstance(obj, dict):
            return {k: expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [expand_env_vars(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            value = os.getenv(env_var)
            if value is None:
                raise ValueError(f"Environment variable '{env_var}' is not set")
            return value
        return obj

    raw_config = expand_env_vars(raw_config)

    return Config(**raw_config)
