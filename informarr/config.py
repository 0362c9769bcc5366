"""Configuration management with YAML and environment variables."""
import os
from pathlib import Path
from typing import Optional, List, Dict
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from informarr.core.models import DerivedStatus, MediaType
from informarr.errors import ConfigError


class JellyseerrConfig(BaseModel):
    url: str
    api_key: str
    page_size: int = 100


class RadarrConfig(BaseModel):
    url: str
    api_key: str


class SonarrConfig(BaseModel):
    url: str
    api_key: str


class HttpConfig(BaseModel):
    timeout: float = 30.0
    max_retries: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 10.0
    circuit_breaker_threshold: int = 3
    circuit_breaker_cooldown: int = 300  # seconds


class ReconciliationConfig(BaseModel):
    # Trusted namespaces per media type, highest priority first
    namespace_priority: Dict[str, List[str]] = Field(default_factory=lambda: {
        "movie": ["tmdb", "imdb"],
        "series": ["tvdb", "tmdb", "imdb"],
    })
    grace_cycles: int = Field(default=3, ge=1)

    @field_validator("namespace_priority")
    @classmethod
    def check_media_types(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        known = {media_type.value for media_type in MediaType}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown media types {unknown}, expected one of {sorted(known)}")
        return value


class DiscordConfig(BaseModel):
    webhook_url: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None


class TelegramConfig(BaseModel):
    bot_token: str
    chat_id: str
    api_url: str = "https://api.telegram.org"


class WebhookConfig(BaseModel):
    url: str
    auth_header: Optional[str] = None  # Ex: "Bearer <token>"


class NotificationsConfig(BaseModel):
    notify_on: List[str] = Field(default_factory=lambda: ["matched-available", "unmatched-stale"])
    retention_hours: int = 24 * 7
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 10.0
    concurrency: int = 4
    timeout: float = 30.0
    discord: Optional[DiscordConfig] = None
    telegram: Optional[TelegramConfig] = None
    webhook: Optional[WebhookConfig] = None

    @field_validator("notify_on")
    @classmethod
    def check_statuses(cls, value: List[str]) -> List[str]:
        known = [status.value for status in DerivedStatus]
        unknown = [status for status in value if status not in known]
        if unknown:
            raise ValueError(f"unknown statuses {unknown}, expected any of {known}")
        return value


class SchedulerConfig(BaseModel):
    enabled: bool = True
    poll_interval_seconds: int = Field(default=30 * 60, gt=0)
    cycle_deadline_seconds: float = Field(default=120.0, gt=0)


class AppConfig(BaseModel):
    data_dir: str = "/data"
    log_level: str = "INFO"
    checkpoint_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__")

    jellyseerr: JellyseerrConfig
    radarr: Optional[RadarrConfig] = None
    sonarr: Optional[SonarrConfig] = None
    http: HttpConfig = Field(default_factory=HttpConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @classmethod
    def load_from_yaml(cls, yaml_path: str) -> "Config":
        """Load configuration from YAML file, override with env vars."""
        config_path = Path(yaml_path)
        if not config_path.exists():
            raise ConfigError(
                f"Config file not found: {yaml_path}\n"
                f"Please create config/config.yaml from config.example.yaml\n"
                f"Make sure the volume is mounted: -v ./config:/config:ro"
            )

        with open(config_path, "r", encoding="utf-8") as f:
            try:
                yaml_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {yaml_path}: {e}") from e

        # Override with environment variables
        for key in ["jellyseerr", "radarr", "sonarr"]:
            section = yaml_data.get(key)
            if not isinstance(section, dict):
                continue
            for subkey in list(section.keys()):
                env_value = os.getenv(f"{key.upper()}__{subkey.upper()}")
                if env_value:
                    section[subkey] = env_value

        try:
            return cls(**yaml_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {yaml_path}: {e}") from e


# Global config instance (initialized in main.py)
config: Optional[Config] = None


def get_config() -> Config:
    """Get the global config instance."""
    if config is None:
        raise RuntimeError("Config not initialized. Call init_config() first.")
    return config


def init_config(config_path: str = "/config/config.yaml") -> Config:
    """Initialize global config from YAML file."""
    global config
    config = Config.load_from_yaml(config_path)
    return config


def set_config(value: Optional[Config]) -> None:
    """Install an already-built config (tests, embedding)."""
    global config
    config = value
