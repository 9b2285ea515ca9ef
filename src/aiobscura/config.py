"""
aiobscura Configuration.

Centralized configuration management using Pydantic Settings.
Values are loaded (highest precedence first) from constructor arguments,
``AIOBSCURA_*`` environment variables, and the TOML config file at
``$XDG_CONFIG_HOME/aiobscura/config.toml``.
"""

import enum
import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from aiobscura.exceptions import ConfigError

APP_NAME = "aiobscura"


def get_xdg_config_dir() -> Path:
    """
    Get XDG-compliant config directory for aiobscura.

    Uses $XDG_CONFIG_HOME/aiobscura if set, otherwise $HOME/.config/aiobscura.
    """
    xdg_config_home = os.getenv("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def get_xdg_data_dir() -> Path:
    """
    Get XDG-compliant data directory (holds the SQLite store).

    Uses $XDG_DATA_HOME/aiobscura if set, otherwise $HOME/.local/share/aiobscura.
    """
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return Path(xdg_data_home) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


def get_xdg_state_dir() -> Path:
    """
    Get XDG-compliant state directory (holds log files).

    Uses $XDG_STATE_HOME/aiobscura if set, otherwise $HOME/.local/state/aiobscura.
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return Path(xdg_state_home) / APP_NAME
    return Path.home() / ".local" / "state" / APP_NAME


def get_config_path() -> Path:
    """Path of the TOML config file (``AIOBSCURA_CONFIG_FILE`` overrides)."""
    override = os.getenv("AIOBSCURA_CONFIG_FILE")
    if override:
        return Path(override).expanduser()
    return get_xdg_config_dir() / "config.toml"


class LLMProviderType(str, enum.Enum):
    """Supported LLM assessment backends."""

    OLLAMA = "ollama"
    CLAUDE = "claude"
    OPENAI = "openai"

    @property
    def default_endpoint(self) -> str:
        return {
            LLMProviderType.OLLAMA: "http://localhost:11434",
            LLMProviderType.CLAUDE: "https://api.anthropic.com",
            LLMProviderType.OPENAI: "https://api.openai.com",
        }[self]


class LoggingSettings(BaseModel):
    """``[logging]`` section."""

    level: str = "info"
    max_files: int = 5
    max_bytes: int = 10_485_760  # 10MB per log file
    console_enabled: bool = False
    log_dir: str = ""  # Defaults to the XDG state dir if empty

    @property
    def log_directory(self) -> Path:
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return get_xdg_state_dir()


class CollectorSettings(BaseModel):
    """``[collector]`` section: remote collector publishing."""

    enabled: bool = False
    server_url: Optional[str] = None
    collector_id: Optional[str] = None
    api_key: Optional[str] = None
    batch_size: int = 20
    timeout_secs: int = 30
    max_retries: int = 3
    flush_interval_secs: int = 5
    stale_minutes: int = 60  # Remote session is completed after this much idle time

    @field_validator("batch_size", "timeout_secs")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("max_retries", "stale_minutes", "flush_interval_secs")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def is_ready(self) -> bool:
        """True when publishing is enabled and fully configured."""
        return bool(
            self.enabled and self.server_url and self.collector_id and self.api_key
        )

    def validate_ready(self) -> None:
        """Raise ConfigError naming the first missing collector option."""
        if not self.server_url:
            raise ConfigError("collector.server_url is required")
        if not self.collector_id:
            raise ConfigError("collector.collector_id is required")
        if not self.api_key:
            raise ConfigError("collector.api_key is required")


class LLMSettings(BaseModel):
    """``[llm]`` section: optional session assessment."""

    provider: LLMProviderType
    model: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout_secs: int = 60

    @property
    def resolved_endpoint(self) -> str:
        return (self.endpoint or self.provider.default_endpoint).rstrip("/")


class AnalyticsSettings(BaseModel):
    """``[analytics]`` section: automatic triggers and plugin limits."""

    inactivity_minutes: int = 15
    tool_call_threshold: int = 20
    timeout_ms: int = 30000
    disabled_plugins: list[str] = Field(default_factory=list)
    plugin_timeouts: dict[str, int] = Field(default_factory=dict)

    def timeout_for(self, plugin_name: str) -> int:
        return self.plugin_timeouts.get(plugin_name, self.timeout_ms)


class AgentPaths(BaseModel):
    """``[agents]`` section: override assistant log roots."""

    claude_code_path: Optional[str] = None
    codex_path: Optional[str] = None
    aider_path: Optional[str] = None
    cursor_path: Optional[str] = None


class Settings(BaseSettings):
    """Application settings loaded from env vars and config.toml."""

    model_config = SettingsConfigDict(
        env_prefix="AIOBSCURA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    llm: Optional[LLMSettings] = None
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    agents: AgentPaths = Field(default_factory=AgentPaths)

    # Database
    db_path: str = ""  # Defaults to $XDG_DATA_HOME/aiobscura/data.db if empty

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=get_config_path()),
        )

    @property
    def database_path(self) -> Path:
        """Get the database file path, using the XDG default if not specified."""
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_xdg_data_dir() / "data.db"


def load_settings(**overrides) -> Settings:
    """
    Load settings, translating parse and validation failures to ConfigError.

    Raises:
        ConfigError: If config.toml is not valid TOML or holds invalid values
    """
    try:
        return Settings(**overrides)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {get_config_path()}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


# Global settings instance (loaded lazily so import never fails on bad config)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings() -> Settings:
    """Discard cached settings and load them again."""
    global _settings
    _settings = None
    return get_settings()
