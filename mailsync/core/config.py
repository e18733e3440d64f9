"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("", description="Database URL (PostgreSQL in production, SQLite for tests)")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")

    # ============================================================
    # Credential Vault
    # ============================================================
    app_encryption_key: Optional[str] = Field(
        None,
        description="AES-256 master key for stored mailbox passwords (64 hex characters)"
    )

    # ============================================================
    # IMAP Configuration (default server for accounts without their own host)
    # ============================================================
    imap_host: Optional[str] = Field(None, description="Default IMAP server hostname")
    imap_port: int = Field(993, description="Default IMAP server port")
    imap_use_ssl: bool = Field(True, description="Use SSL for IMAP")
    imap_timeout: int = Field(30, description="IMAP network timeout in seconds")

    # ============================================================
    # Sync Configuration
    # ============================================================
    sync_batch_size: int = Field(5, description="Messages processed per worker invocation")
    sync_stale_after_seconds: int = Field(
        900,
        description="A processing job whose lease is older than this can be re-claimed"
    )
    worker_max_batches: int = Field(1000, description="Upper bound of batches per worker loop run")
    worker_poll_interval: float = Field(10.0, description="Seconds between polls in --watch mode")

    # ============================================================
    # Attachment Storage
    # ============================================================
    attachment_storage_dir: str = Field("data/attachments", description="Root directory for attachment blobs")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for owner-scoped endpoints")
    admin_api_key: Optional[str] = Field(None, description="API key that also grants scheduled sync of all accounts")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    api_port: int = Field(8000, description="API server port")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
