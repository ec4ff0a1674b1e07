"""Configuration settings using Pydantic for validation."""

import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisConfig(BaseModel):
    """Redis connection configuration."""
    url: Optional[str] = Field(default=None, description="Redis URL, overrides host/port when set")
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[str] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database index")
    key_prefix: str = Field(default="", description="Prefix prepended to every key")
    socket_timeout: int = Field(default=10, description="Socket timeout in seconds")
    socket_connect_timeout: int = Field(default=15, description="Connect timeout in seconds")
    reconnect_attempts: int = Field(default=5, description="Bounded reconnect attempts")
    reconnect_backoff_cap_seconds: float = Field(default=3.0, description="Max delay between reconnects")
    reconnect_backoff_base_seconds: float = Field(default=0.5, description="Base delay between reconnects")


class UpstreamConfig(BaseModel):
    """Upstream data platform configuration."""
    base_url: str = Field(default="https://upstream.example.com/api/v2.1/data", description="Upstream REST base URL")
    access_token: Optional[str] = Field(default=None, description="Static access token")
    registrations_report: str = Field(default="All_Registrations", description="Report listing registrations")
    events_report: str = Field(default="Events", description="Report listing events")
    registration_form: str = Field(default="Registration", description="Form used to create registrations")
    event_field: str = Field(default="Event_Info", description="Field referencing the owning event")
    max_records_per_page: int = Field(default=1000, description="Page size for paginated listing")
    max_records_per_run: int = Field(default=200000, description="Hard ceiling on records fetched per listing")
    rate_limit_requests_per_minute: int = Field(default=60, description="Upstream request budget")
    request_timeout_seconds: int = Field(default=30, description="HTTP request timeout")


class RetryConfig(BaseModel):
    """Retry configuration for resilience."""
    max_attempts: int = Field(default=3, description="Maximum retry attempts")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=60.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")


class SyncConfig(BaseModel):
    """Sync worker configuration."""
    sync_interval_seconds: float = Field(default=300.0, description="Incremental sync period")
    sync_threshold_minutes: float = Field(default=15.0, description="Cursor age that makes an event a sync candidate")
    enable_auto_sync: bool = Field(default=True, description="Arm the periodic incremental sync timer")
    enable_incremental_sync: bool = Field(default=True, description="Allow incremental sync passes")


class BufferConfig(BaseModel):
    """Write buffer configuration."""
    max_attempts: int = Field(default=5, description="Replay attempts before an item is marked failed")
    backoff_base_seconds: float = Field(default=30.0, description="Re-enqueue delay multiplied by attempts")
    sweep_delay_seconds: float = Field(default=1.0, description="Pause between items during a retry sweep")
    retry_interval_seconds: float = Field(default=300.0, description="Scheduled retry sweep period")
    cleanup_interval_seconds: float = Field(default=3600.0, description="Scheduled cleanup period")
    completed_retention_days: float = Field(default=7.0, description="Age after which completed items are removed")


class WebhookConfig(BaseModel):
    """Webhook ingestion configuration."""
    monitored_entity: str = Field(default="All_Registrations", description="Entity name acted on")
    quarantine_max_length: int = Field(default=1000, description="Quarantined messages kept")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    enabled: bool = Field(default=True, description="Run the HTTP adapter")
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")


class ServiceSettings(BaseSettings):
    """Main registration sync service settings."""

    service_name: str = Field(default="registration-sync", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")

    redis: RedisConfig = Field(default_factory=RedisConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod', 'test']:
            raise ValueError("Environment must be 'local', 'dev', 'prod' or 'test'")
        return v


def load_settings(config_file: Optional[str] = None) -> ServiceSettings:
    """Load settings from an optional YAML file, then environment."""
    if not config_file:
        return ServiceSettings()

    with open(config_file, 'r') as f:
        config_data = yaml.safe_load(f) or {}

    config_data = _substitute_env_vars(config_data)

    return ServiceSettings(**config_data)


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute environment variables in configuration."""
    if isinstance(data, dict):
        return {key: _substitute_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    elif isinstance(data, str) and data.startswith('${') and data.endswith('}'):
        env_spec = data[2:-1]

        if ':' in env_spec:
            env_name, default_value = env_spec.split(':', 1)
        else:
            env_name, default_value = env_spec, None

        return os.getenv(env_name, default_value)
    else:
        return data
