"""
Configuration management for Herald.
"""
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from herald import __version__

from herald.constants import (
    DEFAULT_JOB_PRIORITY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    MAX_BACKOFF_MULTIPLIER,
    QUEUE_POLL_INTERVAL_SECONDS,
    QUEUE_BATCH_SIZE,
    DISPATCH_DEADLINE_SECONDS,
    DISPATCH_MAX_WORKERS,
    HTTP_DEFAULT_TIMEOUT_SECONDS,
    HTTP_CLOUD_TIMEOUT_SECONDS,
    HTTP_WEBHOOK_TIMEOUT_SECONDS,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    RETENTION_CLEANUP_INTERVAL_SECONDS,
)


class QueueConfig(BaseModel):
    """Persistent queue and queue processor configuration."""
    poll_interval: float = Field(QUEUE_POLL_INTERVAL_SECONDS, gt=0, description="Seconds between queue polls")
    batch_size: int = Field(QUEUE_BATCH_SIZE, ge=1, description="Maximum jobs leased per poll")
    default_priority: int = DEFAULT_JOB_PRIORITY
    default_max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    default_retry_delay: float = Field(
        DEFAULT_RETRY_DELAY_SECONDS,
        gt=0,
        description="Base retry delay in seconds (doubled per retry)"
    )
    max_backoff_multiplier: int = Field(MAX_BACKOFF_MULTIPLIER, ge=1)


class DispatchConfig(BaseModel):
    """Delivery fan-out configuration."""
    deadline: float = Field(DISPATCH_DEADLINE_SECONDS, gt=0, description="Deadline per fan-out in seconds")
    max_workers: int = Field(DISPATCH_MAX_WORKERS, ge=1, description="Concurrent deliveries per fan-out")


class HTTPPoolConfig(BaseModel):
    """Settings for one shared HTTP client pool."""
    timeout: float
    connect_timeout: float = HTTP_CONNECT_TIMEOUT_SECONDS
    max_connections: int = 100
    max_connections_per_host: int = 30
    keepalive_timeout: float = 90


class HTTPConfig(BaseModel):
    """Shared HTTP pools keyed by service category."""
    default: HTTPPoolConfig = Field(default_factory=lambda: HTTPPoolConfig(
        timeout=HTTP_DEFAULT_TIMEOUT_SECONDS,
        max_connections=100,
        max_connections_per_host=30,
        keepalive_timeout=90,
    ))
    cloud: HTTPPoolConfig = Field(default_factory=lambda: HTTPPoolConfig(
        timeout=HTTP_CLOUD_TIMEOUT_SECONDS,
        connect_timeout=15,
        max_connections=200,
        max_connections_per_host=50,
        keepalive_timeout=120,
    ))
    webhook: HTTPPoolConfig = Field(default_factory=lambda: HTTPPoolConfig(
        timeout=HTTP_WEBHOOK_TIMEOUT_SECONDS,
        max_connections=50,
        max_connections_per_host=20,
        keepalive_timeout=60,
    ))


class RetentionConfig(BaseModel):
    """Data retention configuration."""
    completed_jobs_days: int = Field(7, ge=1, description="Keep completed/failed queue rows this many days")
    metrics_days: int = Field(30, ge=1, description="Keep metrics samples this many days")
    interval: float = Field(RETENTION_CLEANUP_INTERVAL_SECONDS, gt=0)


class TemplatesConfig(BaseModel):
    """Template engine configuration."""
    create_defaults: bool = Field(True, description="Seed the built-in templates on startup")
    cache_size: int = Field(256, ge=1, description="Compiled templates kept in memory")


class Settings(BaseSettings):
    """Application settings loaded from environment and .env file."""

    # Application
    app_name: str = "Herald"
    app_version: str = __version__
    debug: bool = False

    # Probe server
    host: str = "0.0.0.0"
    port: int = 8484

    # Database (SQLite by default, any async SQLAlchemy URL works)
    database_url: str = Field(
        "sqlite+aiosqlite:///./herald.db",
        description="Database connection URL"
    )

    # Logging
    log_dir: str = Field("./logs", description="Directory for rotating log files (empty disables)")

    queue: QueueConfig = Field(default_factory=QueueConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    http: HTTPConfig = Field(default_factory=HTTPConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        env_nested_delimiter = "__"


# Global settings instance
settings = Settings()
