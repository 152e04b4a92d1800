"""Configuration management for Burrow."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from burrow.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.burrow/config.yaml").expanduser()
DEFAULT_SANDBOX_PATH = Path("~/.burrow/sandbox").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Generation backend configuration."""

    provider: str = "ollama"
    model: str = "qwen3:1.7b"
    base_url: str = "http://127.0.0.1:11434"
    temperature: float = 0.7
    max_tokens: int = 512
    timeout: float = 120.0
    end_of_turn_marker: str = "<|im_end|>"


class AgentConfig(BaseModel):
    """Agent loop bounds."""

    max_steps: int = 4
    context_max_messages: int = 24
    context_max_chars: int = 24000


class SandboxConfig(BaseModel):
    """Sandbox root and search limits."""

    path: str = str(DEFAULT_SANDBOX_PATH)
    search_max_results: int = 20
    search_line_chars: int = 100


class SessionConfig(BaseModel):
    """Session configuration."""

    auto_save: bool = True
    default_name: str = "New Chat"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Burrow."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="BURROW_",
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
            with open(config_path, encoding="utf-8") as f:
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
        """Load configuration from YAML; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_sandbox_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve sandbox root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.sandbox.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


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
