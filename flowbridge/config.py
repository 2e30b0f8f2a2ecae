from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


# Defaults applied to an instance when its options are omitted or partial
DEFAULT_INSTANCE_OPTIONS: dict[str, Any] = {
    "command_prefix": "!bot",
    "process_self_messages": False,
    "notify_unauthorized": True,
    "max_conversation_length": 20,
    "show_typing_indicator": True,
    "enable_analytics": False,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings read from the environment and an optional .env file."""

    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3030, "PORT")
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    log_level: str = env_field("INFO", "LOG_LEVEL")

    data_dir: str = env_field("./data", "DATA_DIR")
    sessions_dir: str = env_field("./sessions", "SESSIONS_DIR")

    encryption_key: Optional[str] = env_field(
        None,
        "ENCRYPTION_KEY",
        description="When set, instance configs and conversations are encrypted at rest",
    )
    api_key: Optional[str] = env_field(None, "API_KEY")
    admin_api_key: Optional[str] = env_field(None, "ADMIN_API_KEY")
    cors_origin: str = env_field("*", "CORS_ORIGIN")

    messaging_client_factory: Optional[str] = env_field(
        None,
        "MESSAGING_CLIENT_FACTORY",
        description="Dotted path (module:attribute) of the messaging client factory",
    )

    fallback_model: str = env_field("gpt-4", "FALLBACK_MODEL")
    default_workflow_timeout_ms: int = env_field(15000, "DEFAULT_WORKFLOW_TIMEOUT_MS")
    probe_timeout_seconds: float = env_field(5.0, "PROBE_TIMEOUT_SECONDS")

    reconnect_delay_seconds: float = env_field(5.0, "RECONNECT_DELAY_SECONDS")

    analytics_webhook: Optional[str] = env_field(None, "ANALYTICS_WEBHOOK")
    analytics_queue_size: int = env_field(100, "ANALYTICS_QUEUE_SIZE")
    analytics_max_attempts: int = env_field(2, "ANALYTICS_MAX_ATTEMPTS")

    api_rate_limit: int = env_field(
        100, "API_RATE_LIMIT", description="Requests per client address per window"
    )
    api_rate_limit_window_seconds: int = env_field(900, "API_RATE_LIMIT_WINDOW_SECONDS")

    auto_start_instances: bool = env_field(True, "AUTO_START_INSTANCES")
    conversation_retention_days: int = env_field(30, "CONVERSATION_RETENTION_DAYS")
    cleanup_interval_seconds: int = env_field(86400, "CLEANUP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator(
        "encryption_key", "api_key", "admin_api_key", "messaging_client_factory",
        "analytics_webhook", mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def debug(self) -> bool:
        return self.environment != Environment.PRODUCTION

    @property
    def instances_path(self) -> Path:
        return Path(self.data_dir) / "instances"

    @property
    def conversations_path(self) -> Path:
        return Path(self.data_dir) / "conversations"

    @property
    def sessions_path(self) -> Path:
        return Path(self.sessions_dir)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
