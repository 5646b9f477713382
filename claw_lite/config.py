"""Configuration management for Claw Lite."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from claw_lite.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.claw-lite/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "claw-lite.yaml"

CompressionStrategy = Literal["truncate", "selective", "hybrid"]


class ModelConfig(BaseModel):
    """Model client configuration."""

    provider: str = "ollama"
    model: str = "llama3.2:latest"
    base_url: str = "http://127.0.0.1:11434"
    temperature: float = 0.7
    max_tokens: int = 2048
    api_key: str = ""


class ContextConfig(BaseModel):
    """Context window budgeting configuration."""

    max_tokens: int = 8192
    reserved_tokens: int = 1000
    strategy: CompressionStrategy = "hybrid"
    keep_first_last: bool = True
    max_messages_to_keep: int = 20


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_turns: int = 10
    # Compared against the turn index, not a cumulative count of calls.
    max_tool_calls: int = 5
    max_compaction_retries: int = 1
    timeout_ms: int = 120_000
    streaming: bool = True
    messaging_tool_names: list[str] = Field(default_factory=list)
    messaging_history_limit: int = 200
    session_id: str = "agent-session"


class PlannerConfig(BaseModel):
    """Task planning heuristics."""

    enabled: bool = True
    max_steps: int = 6
    length_trigger_ratio: float = 0.55
    summary_list_limit: int = 10


class RunQueueConfig(BaseModel):
    """Per-session run queue behavior."""

    timeout_ms: int = 300_000
    warn_after_ms: int = 2_000
    history_limit: int = 200


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Claw Lite."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    run_queue: RunQueueConfig = Field(default_factory=RunQueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CLAW_LITE_",
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

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
