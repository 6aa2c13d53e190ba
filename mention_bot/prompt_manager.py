"""Load prompt templates and substitute {{NAME}} placeholders."""

import logging
import re
from pathlib import Path
from typing import Mapping

from .models import MentionType

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


class PromptManager:
    """One template file per mention type, e.g. ``issue_comment.txt``."""

    def __init__(self, prompts_dir: str | Path):
        self.prompts_dir = Path(prompts_dir).expanduser()

    def get_prompt_file_for_mention_type(self, mention_type: MentionType | str) -> str:
        return f"{MentionType(mention_type).value}.txt"

    def prompt_path(self, prompt_file: str) -> Path:
        return self.prompts_dir / prompt_file

    def prompt_exists(self, prompt_file: str) -> bool:
        return self.prompt_path(prompt_file).is_file()

    def get_available_prompts(self) -> list[str]:
        if not self.prompts_dir.is_dir():
            return []
        return sorted(p.name for p in self.prompts_dir.glob("*.txt"))

    def load_prompt(self, prompt_file: str) -> str:
        """Read a template.

        Raises:
            FileNotFoundError: If the template does not exist.
        """
        return self.prompt_path(prompt_file).read_text(encoding="utf-8")

    def process_prompt(self, template: str, variables: Mapping[str, str]) -> str:
        """Replace ``{{NAME}}`` tokens with values from ``variables``.

        Unknown placeholders are left untouched and reported as a warning.
        """
        prompt = template
        for name, value in variables.items():
            prompt = prompt.replace(f"{{{{{name}}}}}", value if value is not None else "")

        unresolved = sorted(set(PLACEHOLDER_PATTERN.findall(prompt)))
        if unresolved:
            logger.warning("Unresolved prompt placeholders: %s", ", ".join(unresolved))

        return prompt
