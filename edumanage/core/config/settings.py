# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the
EduManage build backend. Settings are loaded from environment variables
with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A singleton instance is provided via get_settings() for dependency injection.

Example:
    >>> from edumanage.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.build.templates_dir)
    templates
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration for school, order and build records.

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Database host address.
        port: Database port number.
        database: Database name.
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
    )

    user: str = "edumanage"
    password: SecretStr = SecretStr("edumanage_password")
    host: str = "localhost"
    port: int = 5432
    database: str = "edumanage"
    pool_size: int = 10
    max_overflow: int = 20

    @property
    def url(self) -> str:
        """Build the async database URL from components."""
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class RedisSettings(BaseSettings):
    """Redis configuration for the job queue and its ledger.

    Attributes:
        host: Redis server host.
        port: Redis server port.
        password: Redis password.
        database: Redis database number.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 6379
    password: SecretStr | None = None
    database: int = 0

    @property
    def url(self) -> str:
        """Build the Redis connection URL."""
        if self.password is None:
            return f"redis://{self.host}:{self.port}/{self.database}"
        pwd = self.password.get_secret_value()
        return f"redis://:{pwd}@{self.host}:{self.port}/{self.database}"


class StorageSettings(BaseSettings):
    """Object storage configuration (S3 compatible).

    Attributes:
        bucket: Bucket holding build artifacts.
        region: Bucket region.
        access_key_id: Access key, falls back to the boto3 credential chain.
        secret_access_key: Secret key, falls back to the boto3 credential chain.
        endpoint_url: Custom endpoint for S3-compatible stores (MinIO).
        public_base_url: CDN base URL used for unsigned object URLs.
        signed_url_ttl_seconds: Lifetime of download links.
        upload_timeout_seconds: Upper bound for the upload stage.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore",
    )

    bucket: str = ""
    region: str = "eu-west-1"
    access_key_id: SecretStr | None = None
    secret_access_key: SecretStr | None = None
    endpoint_url: str | None = None
    public_base_url: str | None = None
    signed_url_ttl_seconds: int = 24 * 60 * 60
    upload_timeout_seconds: float = 300.0


class BuildSettings(BaseSettings):
    """Build pipeline configuration.

    Attributes:
        templates_dir: Directory containing one template per package tier.
        builds_dir: Directory holding per-build workspaces and archives.
        system_version: Version tag stamped into generated packages.
        download_expiry_days: Days after creation before downloads expire.
        dependency_manifest: Manifest file that triggers dependency install.
        install_command: Command used to install template dependencies.
        dependency_timeout_seconds: Upper bound for dependency installation.
        api_base_url: API URL written into generated configuration.
        client_domain: Domain used to derive each school's client URL.
        support_email: Support address written into generated configuration.
        smtp_host: Mail host written into the generated environment file.
        smtp_port: Mail port written into the generated environment file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILD_",
        extra="ignore",
    )

    templates_dir: Path = Path("templates")
    builds_dir: Path = Path("builds")
    system_version: str = "1.0.0"
    download_expiry_days: int = 30
    dependency_manifest: str = "package.json"
    install_command: str = "npm install --production"
    dependency_timeout_seconds: float = 600.0
    api_base_url: str = "http://localhost:5000"
    client_domain: str = "schoolsystem.com"
    support_email: str = "support@edumanage.pro"
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587


class QueueSettings(BaseSettings):
    """Job queue configuration.

    Attributes:
        build_concurrency: Builds allowed to run at once across workers.
        build_max_retries: Delivery retries for a build message.
        build_backoff_ms: First retry delay, doubled on each attempt.
        build_time_limit_ms: Hard time limit for one build message.
        build_keep_completed: Completed build jobs kept in the ledger.
        build_keep_failed: Failed build jobs kept in the ledger.
        notification_concurrency: Notifications allowed to send at once.
        notification_max_retries: Delivery retries for a notification.
        notification_backoff_ms: First notification retry delay.
        notification_keep_completed: Completed notification jobs kept.
        notification_keep_failed: Failed notification jobs kept.
        pause_poll_ms: Delay before a paused queue re-checks a message.
        stale_job_grace_days: Age after which finished jobs are cleaned.
        test_mode: Use the in-process StubBroker instead of Redis.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        extra="ignore",
        populate_by_name=True,
    )

    build_concurrency: int = 1
    build_max_retries: int = 3
    build_backoff_ms: int = 5000
    build_time_limit_ms: int = 60 * 60 * 1000
    build_keep_completed: int = 100
    build_keep_failed: int = 50
    notification_concurrency: int = 5
    notification_max_retries: int = 3
    notification_backoff_ms: int = 2000
    notification_keep_completed: int = 500
    notification_keep_failed: int = 100
    pause_poll_ms: int = 5000
    stale_job_grace_days: int = 7
    test_mode: bool = Field(default=False, validation_alias="DRAMATIQ_TEST_MODE")


class SMTPSettings(BaseSettings):
    """Outgoing mail configuration for notification emails.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        username: SMTP authentication username.
        password: SMTP authentication password.
        use_tls: Use STARTTLS.
        from_email: Sender email address.
        from_name: Sender display name.
    """

    model_config = SettingsConfigDict(
        env_prefix="SMTP_",
        extra="ignore",
    )

    host: str | None = None
    port: int = 587
    username: str | None = None
    password: SecretStr | None = None
    use_tls: bool = True
    from_email: str | None = None
    from_name: str = "EduManage Pro"

    @property
    def is_configured(self) -> bool:
        """Check whether every value needed to send mail is present."""
        return all([self.host, self.username, self.password, self.from_email])


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        database: Database settings.
        redis: Redis settings.
        storage: Object storage settings.
        build: Build pipeline settings.
        queue: Job queue settings.
        smtp: Outgoing mail settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    build: BuildSettings = Field(default_factory=BuildSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production without a storage bucket.
        """
        if self.environment == "production" and not self.storage.bucket:
            raise ValueError(
                "Storage bucket must be configured in production. "
                "Set STORAGE_BUCKET environment variable."
            )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
