from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide defaults, read from ``ROWCACHE_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="ROWCACHE_", env_file=".env", extra="ignore")

    # Cache behaviour
    ttl_ms: int | None = None
    max_size: int | None = None
    refresh_interval_ms: int = 5 * 60 * 1000
    cleanup_interval_ms: int = 60 * 1000
    min_auto_sync_interval_ms: int = 10_000
    lazy_reload: bool = True
    stale_while_revalidate: bool = True
    timestamp_field: str = "updated_at"

    # Redis
    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")
    redis_key_prefix: str | None = None
    redis_cluster_sync: bool = False
    redis_reconnect_retries: int = 10

    # Observability
    enable_metrics: bool = True
    log_level: str = "INFO"
    log_json: bool = False


class ReconnectStrategy(BaseModel):
    """Exponential backoff for Redis reconnection."""

    retries: int = 10
    factor: float = 2.0
    min_delay_ms: int = 1000
    max_delay_ms: int = 30_000

    def delay_ms(self, attempt: int) -> float:
        """Backoff delay before the given (1-based) attempt."""
        return min(self.min_delay_ms * self.factor ** (attempt - 1), self.max_delay_ms)


class RedisOptions(BaseModel):
    """Connection and namespacing options for the Redis replica."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    url: str | None = None
    host: str | None = None
    port: int = 6379
    password: str | None = None
    db: int = 0
    key_prefix: str | None = None
    # Externally owned client; never closed by the cache
    client: Any = None
    enable_cluster_sync: bool = False
    reconnect_strategy: ReconnectStrategy = Field(default_factory=ReconnectStrategy)


class CacheOptions(BaseModel):
    """Options for a single model cache."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key_fields: list[str] = Field(default_factory=lambda: ["id"])
    ttl_ms: int | None = None
    max_size: int | None = None
    refresh_interval_ms: int = 5 * 60 * 1000
    cleanup_interval_ms: int = 60 * 1000
    min_auto_sync_interval_ms: int = 10_000
    lazy_reload: bool = True
    stale_while_revalidate: bool = True
    timestamp_field: str = "updated_at"
    redis: RedisOptions | None = None
    logger: logging.Logger | None = None

    @field_validator("key_fields", mode="before")
    @classmethod
    def _coerce_key_fields(cls, value: Any) -> Any:
        if value is None:
            return ["id"]
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("ttl_ms", "max_size")
    @classmethod
    def _zero_means_unset(cls, value: int | None) -> int | None:
        # 0 disables the feature, same as None
        return value or None

    @classmethod
    def from_settings(cls, source: Settings | None = None, **overrides: Any) -> "CacheOptions":
        """Build options from environment-backed settings."""
        source = source or settings
        values: dict[str, Any] = {
            "ttl_ms": source.ttl_ms,
            "max_size": source.max_size,
            "refresh_interval_ms": source.refresh_interval_ms,
            "cleanup_interval_ms": source.cleanup_interval_ms,
            "min_auto_sync_interval_ms": source.min_auto_sync_interval_ms,
            "lazy_reload": source.lazy_reload,
            "stale_while_revalidate": source.stale_while_revalidate,
            "timestamp_field": source.timestamp_field,
        }
        if source.redis_url:
            values["redis"] = RedisOptions(
                url=source.redis_url,
                key_prefix=source.redis_key_prefix,
                enable_cluster_sync=source.redis_cluster_sync,
                reconnect_strategy=ReconnectStrategy(retries=source.redis_reconnect_retries),
            )
        values.update(overrides)
        return cls(**values)


settings = Settings()
