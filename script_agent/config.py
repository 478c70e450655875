"""Configuration management for Script Agent."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME_DIR = Path("~/.script-agent").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_API_BASE = "https://api.anthropic.com"


class ModelConfig(BaseModel):
    """Remote model configuration."""

    model: str = DEFAULT_MODEL
    max_tokens: int = 8192
    temperature: float | None = None
    thinking: bool = False
    thinking_budget: int = 10000
    api_key: str = ""
    base_url: str = DEFAULT_API_BASE


class TransportConfig(BaseModel):
    """Transport selection and timeouts."""

    mode: Literal["auto", "direct", "subprocess"] = "auto"
    cli_path: str = ""
    permission_mode: str = "bypassPermissions"
    cli_max_turns: int = 20
    allowed_tools: list[str] = Field(default_factory=list)
    connect_timeout: float = 30.0
    read_timeout: float = 30.0
    exchange_timeout: float = 600.0
    poll_interval: float = 0.1
    terminate_grace: float = 5.0


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_turns: int = 20
    project_dir: str = ""
    inside_host: bool = False


class HistoryConfig(BaseModel):
    """Session history configuration."""

    base_dir: str = str(DEFAULT_HOME_DIR)
    enabled: bool = True


class ExecutorConfig(BaseModel):
    """Default script executor configuration."""

    python: str = ""
    timeout: int = 60
    max_output_chars: int = 10000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Script Agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SCRIPT_AGENT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars fill sections the file leaves out."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_history_dir(self) -> Path:
        """Return the history base directory as an absolute path."""
        return Path(self.history.base_dir).expanduser().resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
