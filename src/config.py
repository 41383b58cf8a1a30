"""
Configuration module for the access relay.

Loads configuration from environment variables.
Supports plugin-based architecture with plugin-specific configuration.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

BACKENDS = ("postgres", "memory")


@dataclass
class DatabaseConfig:
    """Plugin data store configuration."""

    backend: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    database: str = "access_relay"
    user: str = "access_relay"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("PLUGIN_DATA_BACKEND", "postgres").lower()
        if backend not in BACKENDS:
            raise ValueError(
                f"PLUGIN_DATA_BACKEND must be one of {', '.join(BACKENDS)}, "
                f"got {backend!r}"
            )

        password = os.getenv("DB_PASSWORD", "")
        if backend == "postgres" and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            backend=backend,
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "access_relay"),
            user=os.getenv("DB_USER", "access_relay"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class UpstreamConfig:
    """Upstream authority connection configuration."""

    url: str = "http://localhost:3080"
    token: str = field(default="", repr=False)
    timeout: float = 10.0

    # Watch stream reconnect backoff
    backoff_base_delay: float = 1.0  # seconds
    backoff_max_delay: float = 60.0  # seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            url=os.getenv("UPSTREAM_URL", "http://localhost:3080"),
            token=os.getenv("UPSTREAM_TOKEN", ""),
            timeout=float(os.getenv("UPSTREAM_TIMEOUT", "10")),
            backoff_base_delay=float(os.getenv("WATCH_BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("WATCH_BACKOFF_MAX_DELAY", "60")),
            backoff_jitter_factor=float(
                os.getenv("WATCH_BACKOFF_JITTER_FACTOR", "0.1")
            ),
        )


@dataclass
class ReconcilerConfig:
    """Reconciler worker pool configuration."""

    max_concurrent_reconciles: int = 8
    retry_attempts: int = 3
    retry_base_delay: float = 0.5  # seconds
    drain_timeout: float = 10.0  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "8")),
            retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
            retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.5")),
            drain_timeout=float(os.getenv("DRAIN_TIMEOUT", "10")),
        )


@dataclass
class WebhookConfig:
    """Callback HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    signing_secret: str = field(default="", repr=False)  # Never log secret
    signature_version: str = "v0"
    timestamp_header: str = "X-Slack-Request-Timestamp"
    signature_header: str = "X-Slack-Signature"
    replay_window: float = 300.0  # seconds
    callback_timeout: float = 2.5  # seconds
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        secret = os.getenv("WEBHOOK_SIGNING_SECRET", "")
        if not secret:
            raise ValueError(
                "WEBHOOK_SIGNING_SECRET environment variable must be set. "
                "Callbacks cannot be verified without it."
            )

        return cls(
            host=os.getenv("WEBHOOK_HOST", "0.0.0.0"),
            port=int(os.getenv("WEBHOOK_PORT", "8081")),
            signing_secret=secret,
            signature_version=os.getenv("WEBHOOK_SIGNATURE_VERSION", "v0"),
            timestamp_header=os.getenv(
                "WEBHOOK_TIMESTAMP_HEADER", "X-Slack-Request-Timestamp"
            ),
            signature_header=os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-Slack-Signature"),
            replay_window=float(os.getenv("WEBHOOK_REPLAY_WINDOW", "300")),
            callback_timeout=float(os.getenv("WEBHOOK_CALLBACK_TIMEOUT", "2.5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Name of the single notification channel to run
    channel: str = "slack"

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                raise ValueError(f"PLUGIN_CONFIGS is not valid JSON: {e}")
            if not isinstance(plugin_configs, dict):
                raise ValueError("PLUGIN_CONFIGS must be a JSON object")

        return cls(
            channel=os.getenv("NOTIFICATION_CHANNEL", "slack").strip(),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    upstream: UpstreamConfig
    reconciler: ReconcilerConfig
    webhook: WebhookConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            upstream=UpstreamConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
            webhook=WebhookConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            upstream=UpstreamConfig(),
            reconciler=ReconcilerConfig(),
            webhook=WebhookConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
