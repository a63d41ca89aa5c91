from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from panelflow.logging import get_logger

logger = get_logger(__name__)

MAX_NODE_WORKERS = 16  # Hard cap to prevent thread exhaustion


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the engine, debate and notification transports."""

    # Scheduler
    max_concurrent_executions: int = env_field(
        10,
        "MAX_CONCURRENT_EXECUTIONS",
        description="Executions admitted at once; further submissions are rejected",
    )
    node_workers: int = env_field(
        8, "NODE_WORKERS", description="Thread pool size for blocking node calls"
    )
    default_execution_timeout_ms: int = env_field(
        60 * 60 * 1000, "DEFAULT_EXECUTION_TIMEOUT_MS"
    )
    execution_retry_delay_ms: int = env_field(1000, "EXECUTION_RETRY_DELAY_MS")
    default_max_retries: int = env_field(3, "DEFAULT_MAX_RETRIES")
    max_node_visits: int = env_field(
        100,
        "MAX_NODE_VISITS",
        description="Visits allowed per node before a loop is treated as unbounded",
    )
    # Debate
    debate_max_rounds: int = env_field(3, "DEBATE_MAX_ROUNDS")
    debate_early_stop_threshold: float = env_field(0.8, "DEBATE_EARLY_STOP_THRESHOLD")
    # Role service
    role_service_url: str | None = env_field(
        None, "ROLE_SERVICE_URL", description="Base URL of the analyst role service"
    )
    role_service_timeout: float = env_field(30.0, "ROLE_SERVICE_TIMEOUT")
    # Notification transports
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("PanelFlow", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(
        None, "SMS_GATEWAY_URL", description="HTTP gateway accepting {to, message} posts"
    )
    webhook_timeout: float = env_field(10.0, "WEBHOOK_TIMEOUT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )

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
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("node_workers")
    @classmethod
    def _clamp_node_workers(cls, value: int) -> int:
        clamped = min(max(1, value), MAX_NODE_WORKERS)
        if clamped != value:
            logger.warning("node_workers_clamped", requested=value, applied=clamped)
        return clamped

    @field_validator("max_concurrent_executions", "max_node_visits", "debate_max_rounds")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("debate_early_stop_threshold")
    @classmethod
    def _ensure_unit_interval(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("must be within [0, 1]")
        return value


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
