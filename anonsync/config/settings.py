"""
Centralized configuration for the anonymization sync engine.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
Database and collection names are fixed and not configurable.
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DATABASE_NAME = "ecommerce-store"
SOURCE_COLLECTION = "customers"
TARGET_COLLECTION = "customers_anonymised"
CHECKPOINT_COLLECTION = "customers_anonymization_state"

# Fields that may be copied through to the anonymized record unchanged
RETAINABLE_FIELDS = frozenset({"address.city", "address.state", "address.country", "createdAt"})


class MongoSettings(BaseSettings):
    """MongoDB connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    uri: str = Field(..., description="MongoDB connection URI (replica set, change streams required)")

    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    @field_validator("uri")
    @classmethod
    def validate_uri(cls, v: str) -> str:
        if not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("DB_URI must be a mongodb:// or mongodb+srv:// URI")
        return v


class SyncSettings(BaseSettings):
    """Live sync, batching and retry configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    batch_size: int = Field(default=1000, description="Records in the live batch that trigger a flush")
    flush_interval_ms: int = Field(default=1000, description="Period of the time-triggered flush")
    max_flush_failures: int = Field(
        default=5,
        description="Consecutive failed flushes tolerated before the engine stops"
    )
    retained_fields: List[str] = Field(
        default_factory=lambda: ["createdAt"],
        description="Non-sensitive fields copied through to the anonymized record"
    )

    # Change stream reconnects
    max_retries: int = Field(default=5, description="Change stream reconnect attempts")
    retry_backoff_base: int = Field(default=2, description="Exponential backoff base in seconds")
    max_retry_delay: int = Field(default=60, description="Max seconds between reconnect attempts")

    @field_validator("batch_size", "flush_interval_ms", "max_flush_failures")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("retained_fields")
    @classmethod
    def validate_retained_fields(cls, v: List[str]) -> List[str]:
        unknown = set(v) - RETAINABLE_FIELDS
        if unknown:
            raise ValueError(
                f"Unknown retained fields {sorted(unknown)}; allowed: {sorted(RETAINABLE_FIELDS)}"
            )
        return v


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="json", description="Log output format: json or text")
    metrics_port: Optional[int] = Field(default=None, description="Port for the Prometheus endpoint")

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {sorted(allowed)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return v.lower()


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
