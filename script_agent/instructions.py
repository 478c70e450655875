"""Build the system prompt from Markdown files in a project directory.

Supports a two-layer override system:
  1. Personal overrides in ``~/.script-agent/instructions/`` (highest priority)
  2. Files in the project directory

Missing files are skipped; the prompt is whatever could be read.
"""

from __future__ import annotations

from pathlib import Path

from script_agent.config import DEFAULT_HOME_DIR
from script_agent.logging import get_logger

log = get_logger(__name__)

_PERSONAL_DIR = DEFAULT_HOME_DIR / "instructions"

PROMPT_FILES = ("PROMPT.md", "API_REFERENCE.md", "USAGE.md")
HOST_PROMPT_FILE = "HOST.md"
SECTION_SEPARATOR = "\n\n"


class PromptLoader:
    """Read prompt sections with personal-override support.

    Resolution order for every file:
      1. ``personal_dir / name``
      2. ``project_dir / name``
    """

    def __init__(
        self,
        project_dir: Path | str,
        personal_dir: Path | str | None = None,
    ):
        self.project_dir = Path(project_dir).expanduser().resolve()
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str | None] = {}

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.project_dir / name

    def is_overridden(self, name: str) -> bool:
        return (self.personal_dir / name).is_file()

    def load(self, name: str) -> str | None:
        """File content, or ``None`` when neither layer has it."""
        if name in self._cache:
            return self._cache[name]

        path = self._path(name)
        content: str | None = None
        if path.is_file():
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                log.warning("Failed to read prompt file", path=str(path), error=str(e))
        self._cache[name] = content
        return content

    def system_prompt(self, inside_host: bool = False) -> str:
        names = list(PROMPT_FILES)
        if inside_host:
            names.append(HOST_PROMPT_FILE)

        sections = [content for content in (self.load(name) for name in names) if content]
        return SECTION_SEPARATOR.join(sections)


def load_default_system_prompt(project_dir: Path | str, inside_host: bool = False) -> str:
    """Concatenate PROMPT.md, API_REFERENCE.md, USAGE.md (and HOST.md inside a host)."""
    return PromptLoader(project_dir).system_prompt(inside_host=inside_host)
