"""Configuration management for Nimbus."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.nimbus/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.nimbus/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

ReasoningEffort = Literal["off", "minimal", "low", "medium", "high"]


class CredentialRecord(BaseModel):
    """Credential attached to a provider entry."""

    type: Literal["api_key", "oauth"] = "api_key"
    access_token: str = ""
    refresh_token: str = ""
    expires_at: float = 0.0  # Unix timestamp


class ProviderConfig(BaseModel):
    """Connection settings for one model provider."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    type: Literal["responses-api", "chat-completions"] | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    auth: CredentialRecord | None = None


class ModelConfig(BaseModel):
    """Model configuration."""

    model: str = "gpt-5-mini"
    temperature: float | None = None
    max_tokens: int | None = None
    parallel_tool_calls: bool = True
    reasoning_effort: ReasoningEffort | None = None


class AgentConfig(BaseModel):
    """Agent loop limits handed to the engine."""

    name: str = "nimbus"
    max_depth: int = 100
    tool_timeout: float = 60.0
    max_tool_result_size: int = 50000


class ChatConfig(BaseModel):
    """Turn orchestration settings."""

    stream_flush_interval: float = 0.15
    context_status_clear_seconds: float = 15.0
    mention_max_chars: int = 10000
    tool_result_preview_chars: int = 2000
    default_mode: str = "build"
    plans_dir: str = ".nimbus/plans"


class OAuthConfig(BaseModel):
    """OAuth refresh settings for providers with expiring tokens."""

    issuer: str = "https://auth.openai.com"
    client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    refresh_margin_seconds: float = 60.0
    refreshable_base_url: str = "chatgpt.com/backend-api/codex"
    default_provider_key: str = "openai-codex"
    timeout: float = 30.0


class SessionConfig(BaseModel):
    """Session configuration."""

    storage: str = "sqlite"
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Nimbus."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="NIMBUS_",
        env_file=".env",
        env_nested_delimiter="__",
        protected_namespaces=(),
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats YAML values passed as init kwargs.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def persist_provider_credential(
    provider_key: str,
    record: CredentialRecord,
    api_key: str | None = None,
    path: Path | str | None = None,
) -> bool:
    """Write refreshed credential fields for one provider back to disk.

    Only the named provider entry is touched; the rest of the file is kept
    as written. Returns False when the file or provider entry is absent.
    I/O and YAML errors propagate.
    """
    config_path = Path(path).expanduser() if path else Config.resolve_default_config_path()
    if not config_path.exists():
        return False

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    entry = (data.get("providers") or {}).get(provider_key)
    if not isinstance(entry, dict):
        return False

    if api_key is not None:
        entry["api_key"] = api_key
    auth = entry.setdefault("auth", {})
    auth["type"] = record.type
    auth["access_token"] = record.access_token
    auth["refresh_token"] = record.refresh_token
    auth["expires_at"] = record.expires_at

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return True


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
