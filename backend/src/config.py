"""Application configuration via environment variables.

Provides type-safe settings loading using pydantic-settings.
Environment variables can be loaded from a .env file.
"""

from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Connector engine settings loaded from environment variables.

    All settings have sensible defaults for development.
    Production deployments MUST set CREDENTIAL_VAULT_KEY.

    Environment Variables:
        CREDENTIAL_VAULT_KEY: Key material for instance credential encryption
        LOG_LEVEL: Logging level (default INFO)
        LOG_JSON: Emit JSON log lines (default True)
        DEFAULT_ENDPOINT_TIMEOUT_MS: Timeout for endpoints that declare none
        STRICT_CONVERSIONS: Raise on invalid `convert` coercions (default True)
        AUDIT_MAX_ATTEMPTS: Write attempts per audit event before it stays queued
        AUDIT_RETRY_DELAY_SECONDS: Base delay between audit write attempts
        AUDIT_MAX_PENDING: Undelivered audit events kept before the oldest is dropped
        HTTP_MAX_CONNECTIONS: Connection pool size of the default HTTP transport
        CONNECTOR_DEFINITIONS_PATH: Directory of JSON connector declarations
        LOAD_BUILTIN_CONNECTORS: Register the built-in connectors at startup
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Security
    CREDENTIAL_VAULT_KEY: str = "dev-vault-key-CHANGE-IN-PRODUCTION"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Execution
    DEFAULT_ENDPOINT_TIMEOUT_MS: int = 30_000
    STRICT_CONVERSIONS: bool = True

    # Audit outbox
    AUDIT_MAX_ATTEMPTS: int = 3
    AUDIT_RETRY_DELAY_SECONDS: float = 0.1
    AUDIT_MAX_PENDING: int = 10_000

    # HTTP transport
    HTTP_MAX_CONNECTIONS: int = 100

    # Connector catalog
    CONNECTOR_DEFINITIONS_PATH: Optional[str] = None
    LOAD_BUILTIN_CONNECTORS: bool = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache for singleton behavior.
    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
