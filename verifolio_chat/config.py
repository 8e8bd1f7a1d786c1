"""Configuration management for Verifolio Chat."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.verifolio-chat/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Upstream model configuration (OpenAI-compatible Chat Completions)."""

    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    temperature: float | None = None


class TimeoutsConfig(BaseModel):
    """Timeout tiers, in seconds."""

    model_seconds: float = Field(default=60.0, gt=0)
    tool_seconds: float = Field(default=30.0, gt=0)
    total_seconds: float = Field(default=90.0, gt=0)


class ChatConfig(BaseModel):
    """Round controller policy."""

    # Mutating tools that need confirmation even in auto mode.
    always_confirm: list[str] = Field(default_factory=list)
    max_tool_rounds: int = Field(default=2, ge=1)
    max_retry_rounds: int = Field(default=1, ge=0)

    @field_validator("always_confirm")
    @classmethod
    def _normalize_tool_names(cls, value: list[str]) -> list[str]:
        return sorted({name.strip() for name in value if name.strip()})


class BackendConfig(BaseModel):
    """Business API that executes tools on behalf of the assistant."""

    base_url: str = "http://127.0.0.1:3000/api/assistant"
    api_key: str = ""


class WebConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=8340, ge=1, le=65535)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Verifolio Chat."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="VERIFOLIO_",
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
        """Load configuration; environment variables still apply through BaseSettings."""
        return cls.from_yaml(path)


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
