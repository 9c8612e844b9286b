"""Configuration management for supamail."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CATEGORIES = ["Personal", "Social", "Promotions", "Updates", "Transactional", "Spam"]


class MailgunConfig(BaseModel):
    """Mail relay configuration (inbound webhook + outbound forwarding)."""

    api_key: str | None = None
    domain: str = "supamail.mariobalca.com"  # Masked addresses live under this domain
    base_url: str = "https://api.eu.mailgun.net"
    signing_key: str = ""  # Webhook signing key; empty rejects every webhook
    timeout: float = 10.0  # seconds


class LLMConfig(BaseModel):
    """LLM provider configuration for the classifier."""

    provider: str = "openai"  # "openai", "anthropic" or "ollama"
    model: str = "gpt-4o-mini"
    max_tokens: int = 50
    temperature: float = 0.2
    timeout: float = 15.0  # seconds; the classifier must never block indefinitely
    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"


class ClassifierConfig(BaseModel):
    """Classifier behaviour and fallback values."""

    enabled: bool = True
    default_summary: str = "Summary unavailable"
    default_category: str = "Updates"
    categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"


class Settings(BaseSettings):
    """Application settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_prefix="SUPAMAIL_",
        env_nested_delimiter="__",
    )

    # Paths
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config" / "supamail")
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "supamail")
    db_path: Path | None = None

    # API keys (loaded from environment)
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None

    mailgun: MailgunConfig = Field(default_factory=MailgunConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        if self.db_path is None:
            self.db_path = self.data_dir / "supamail.db"

    def ensure_dirs(self) -> None:
        """Create necessary directories."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def get_db_path(self) -> Path:
        """Database file path.

        Raises:
            ValueError: No path was configured or derived.
        """
        if self.db_path is None:
            raise ValueError("db_path is not configured")
        return self.db_path

    def llm_api_key(self) -> str | None:
        """API key for the configured LLM provider, if it needs one."""
        if self.llm.provider == "openai":
            return self.openai_api_key
        if self.llm.provider == "anthropic":
            return self.anthropic_api_key
        return None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence.

    Nested dicts are merged recursively. Lists and other values are replaced.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(config_dir: Path | None = None) -> Settings:
    """Load settings from environment and config files.

    Loads config.yaml first, then merges config.local.yaml on top if it
    exists. Environment variables (SUPAMAIL_*) fill in anything the files
    leave unset.
    """
    config_dir = config_dir or Path.home() / ".config" / "supamail"
    config_file = config_dir / "config.yaml"
    local_config_file = config_dir / "config.local.yaml"

    file_settings: dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            file_settings = yaml.safe_load(f) or {}

    if local_config_file.exists():
        with open(local_config_file) as f:
            local_settings = yaml.safe_load(f) or {}
        file_settings = _deep_merge(file_settings, local_settings)

    if "config_dir" not in file_settings:
        file_settings["config_dir"] = config_dir

    return Settings(**file_settings)
