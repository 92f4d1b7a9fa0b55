"""
Centralized configuration management for the MongoDB change-stream trigger.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MongoSettings(BaseSettings):
    """MongoDB client configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Used by the CLI when no connection string is passed explicitly
    connection_string: Optional[str] = Field(
        default=None,
        description="MongoDB connection string (mongodb:// or mongodb+srv://)"
    )

    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")
    app_name: str = Field(default="mongo-change-trigger", description="appName reported to the server")


class StreamSettings(BaseSettings):
    """Change stream options."""

    model_config = SettingsConfigDict(
        env_prefix="STREAM_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Upper bound on how long the listener waits on the server before it
    # re-checks the stop flag
    max_await_time_ms: int = Field(default=1000, description="getMore await time in milliseconds")
    batch_size: Optional[int] = Field(default=None, description="Change stream cursor batch size")
    full_document: Optional[str] = Field(
        default=None,
        description="Default fullDocument mode (e.g. updateLookup) when the watch config sets none"
    )
    thread_join_timeout: float = Field(
        default=5.0,
        description="Seconds wait_closed() waits for the listener thread"
    )

    @field_validator("max_await_time_ms")
    @classmethod
    def validate_max_await(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_await_time_ms must be positive")
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    level: str = Field(default="INFO", description="Root log level")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class WatchSettings(BaseSettings):
    """Default watch target for the command line entry point."""

    model_config = SettingsConfigDict(
        env_prefix="WATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    database: Optional[str] = Field(default=None, description="Database to watch")
    collection: Optional[str] = Field(default=None, description="Collection to watch")
    fields: str = Field(default="*", description='"*" or comma-separated field names')
    operation_types: List[str] = Field(
        default=["update"],
        description="Operation types that trigger an emission"
    )


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


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
