"""shadowpod settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shadowpod.version import __version__


class KubernetesSettings(BaseSettings):
    """Kubernetes connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_K8S_",
        extra="ignore",
    )

    in_cluster: bool = Field(
        default=False,
        description="Whether running inside a Kubernetes cluster",
    )
    kubeconfig_path: str | None = Field(
        default=None,
        description="Path to kubeconfig file (if not in-cluster)",
    )
    context: str | None = Field(
        default=None,
        description="Kubernetes context to use",
    )
    namespace: str = Field(
        default="default",
        description="Namespace used when a command does not name one",
    )
    image_pull_secret: str | None = Field(
        default=None,
        description="Image pull secret attached to created shadow pods",
    )


class LifecycleSettings(BaseSettings):
    """Polling configuration for lifecycle waits."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_LIFECYCLE_",
        extra="ignore",
    )

    poll_interval_seconds: int = Field(
        default=6,
        ge=1,
        description="Interval between two polls of a waiting pod",
    )
    terminate_max_attempts: int = Field(
        default=10,
        ge=1,
        description="Fixed number of polls while waiting for a pod to terminate",
    )
    default_timeout_seconds: int = Field(
        default=60,
        ge=0,
        description="Timeout used by running/ready waits when none is given",
    )


class RefCountSettings(BaseSettings):
    """Optimistic-concurrency policy for ref-count updates."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_REFCOUNT_",
        extra="ignore",
    )

    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Read-modify-write attempts before a conflict is raised (1 = no retry)",
    )
    backoff_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Delay between two conflicting attempts",
    )


class WatchSettings(BaseSettings):
    """Watch stream reconnect policy."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_WATCH_",
        extra="ignore",
    )

    resubscribe_on_close: bool = Field(
        default=True,
        description="Resubscribe when the server closes a watch stream cleanly",
    )
    max_reconnect_attempts: int = Field(
        default=5,
        ge=0,
        description="Consecutive failed streams tolerated before failing closed",
    )
    reconnect_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before resubscribing after a failed stream",
    )
    server_timeout_seconds: int | None = Field(
        default=None,
        ge=1,
        description="Server-side watch timeout (None = server default)",
    )


class HeartbeatSettings(BaseSettings):
    """Heartbeat annotation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_HEARTBEAT_",
        extra="ignore",
    )

    interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Interval between two heartbeat patches",
    )


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_OBSERVABILITY_",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    prometheus_enabled: bool = Field(
        default=False,
        description="Register metrics in the default Prometheus registry",
    )
    metrics_namespace: str = Field(
        default="shadowpod",
        description="Prefix for all exported metric names",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> object:
        """Accept lower-case level names from the environment."""
        if isinstance(v, str):
            return v.upper()
        return v


class Settings(BaseSettings):
    """Main shadowpod configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHADOWPOD_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    version: str = Field(default=__version__)
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    refcount: RefCountSettings = Field(default_factory=RefCountSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def is_production(self) -> bool:
        """Whether the process runs in the production environment."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Use this function to access settings throughout the application.
    Settings are cached after first load for performance.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()


def reload_settings() -> Settings:
    """Force reload settings (clears cache).

    Use this when you need to reload settings from environment
    or .env file, such as during testing.

    Returns:
        Settings: Fresh settings instance.
    """
    get_settings.cache_clear()
    return get_settings()


settings = get_settings()
