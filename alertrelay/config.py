"""Service settings for alertrelay.

Settings come from environment variables prefixed with ``ALERTRELAY_``
(or a ``.env`` file) and cover the HTTP listener, logging, engine timing and
the defaults used to build a routing configuration when no config file is
given. The routing tree, receivers and inhibition rules themselves live in
the config file (see ``alertrelay.schema``).

Example:
    export ALERTRELAY_PORT=9093
    export ALERTRELAY_DISCORD_WEBHOOK_URL=https://discord.com/api/webhooks/...
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

from .durations import parse_duration


class Settings(BaseSettings):
    """Application settings with validation.

    Attributes:
        host: Listen address
        port: Listen port
        log_level: Logging level (debug, info, warning, error)
        log_format: ``json`` or ``console``
        external_url: Base URL of this service, used in notification links
        config_file: JSON routing configuration; defaults are used when unset
        resolve_timeout: Lifetime of a firing alert without heartbeat
        alert_retention: How long resolved alerts are kept
        maintenance_interval: Period of the expiry / garbage collection loop
        notification_log_path: JSON snapshot of the notification log
        max_delivery_attempts: Attempts per notifier for transient failures
        backoff_base_seconds: First retry delay
        backoff_max_seconds: Upper bound for retry delays
        http_timeout_seconds: Timeout for outbound notifier requests
        discord_webhook_url: Webhook for the default ``discord`` receiver
        group_by: Default group_by labels
        group_wait: Default group wait
        group_interval: Default group interval
        repeat_interval: Default repeat interval
        critical_repeat_interval: Repeat interval for ``severity=critical``
        warning_repeat_interval: Repeat interval for ``severity=warning``
    """

    model_config = SettingsConfigDict(
        env_prefix="ALERTRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=9093)
    log_level: str = Field(default="info")
    log_format: str = Field(default="json")
    external_url: str = Field(default="")

    # Engine Configuration
    config_file: str | None = Field(default=None)
    resolve_timeout: str = Field(default="5m")
    alert_retention: str = Field(default="1h")
    maintenance_interval: str = Field(default="30s")
    notification_log_path: str | None = Field(default=None)

    # Delivery Configuration
    max_delivery_attempts: int = Field(default=5)
    backoff_base_seconds: float = Field(default=1.0)
    backoff_max_seconds: float = Field(default=30.0)
    http_timeout_seconds: float = Field(default=10.0)

    # Default Routing Configuration
    discord_webhook_url: str | None = Field(default=None)
    group_by: list[str] = Field(default_factory=lambda: ["alertname", "cluster", "service"])
    group_wait: str = Field(default="10s")
    group_interval: str = Field(default="10s")
    repeat_interval: str = Field(default="1h")
    critical_repeat_interval: str = Field(default="15m")
    warning_repeat_interval: str = Field(default="30m")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number."""
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log output format."""
        if v not in ("json", "console"):
            raise ValueError("Log format must be 'json' or 'console'")
        return v

    @field_validator(
        "resolve_timeout",
        "alert_retention",
        "maintenance_interval",
        "group_wait",
        "group_interval",
        "repeat_interval",
        "critical_repeat_interval",
        "warning_repeat_interval",
    )
    @classmethod
    def validate_duration(cls, v: str) -> str:
        """Validate duration strings early so startup fails loudly."""
        parse_duration(v)
        return v

    @field_validator("max_delivery_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate delivery attempts."""
        if v < 1 or v > 100:
            raise ValueError("Delivery attempts must be between 1 and 100")
        return v


def default_config(settings: Settings) -> dict[str, Any]:
    """Routing configuration used when no config file is given.

    One ``discord`` receiver, severity-specific repeat intervals for
    critical and warning alerts, and critical alerts inhibiting warnings
    with the same alertname and instance.
    """
    discord_configs = []
    if settings.discord_webhook_url:
        discord_configs.append({"webhook_url": settings.discord_webhook_url, "send_resolved": True})

    return {
        "global": {"resolve_timeout": settings.resolve_timeout},
        "route": {
            "receiver": "discord",
            "group_by": list(settings.group_by),
            "group_wait": settings.group_wait,
            "group_interval": settings.group_interval,
            "repeat_interval": settings.repeat_interval,
            "routes": [
                {
                    "match": {"severity": "critical"},
                    "receiver": "discord",
                    "repeat_interval": settings.critical_repeat_interval,
                },
                {
                    "match": {"severity": "warning"},
                    "receiver": "discord",
                    "repeat_interval": settings.warning_repeat_interval,
                },
            ],
        },
        "receivers": [{"name": "discord", "discord_configs": discord_configs}],
        "inhibit_rules": [
            {
                "source_match": {"severity": "critical"},
                "target_match": {"severity": "warning"},
                "equal": ["alertname", "instance"],
            }
        ],
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
