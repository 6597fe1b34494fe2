"""Environment-based configuration for the rewards engine."""

from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database configuration with connection pooling."""

    url: Optional[str] = Field(None, description="Full SQLAlchemy URL, overrides host/port")
    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port", ge=1, le=65535)
    username: str = Field("playtest", description="Database username")
    password: SecretStr = Field(SecretStr(""), description="Database password")
    database: str = Field("playtest", description="Database name")
    echo: bool = Field(False, description="Echo SQL statements")

    # Connection pool settings
    pool_size: int = Field(10, description="Connection pool size", ge=1, le=100)
    max_overflow: int = Field(20, description="Max pool overflow", ge=0, le=100)
    pool_timeout: int = Field(30, description="Pool timeout seconds", ge=1, le=300)
    pool_recycle: int = Field(3600, description="Pool recycle seconds", ge=60)

    model_config = SettingsConfigDict(env_prefix="DB_")

    @property
    def connection_url(self) -> str:
        """Build the synchronous database URL."""
        if self.url:
            return self.url
        password = self.password.get_secret_value()
        credentials = f"{self.username}:{password}" if password else self.username
        return f"postgresql+psycopg2://{credentials}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.connection_url.startswith("sqlite")


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Log level")
    format: str = Field("json", description="Log format: json or console")

    # Sensitive data handling
    sensitive_fields: List[str] = Field(
        default=["password", "token", "api_key", "secret", "email"],
        description="Fields to mask in logs",
    )

    model_config = SettingsConfigDict(env_prefix="LOG_")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log renderer."""
        if v not in {"json", "console"}:
            raise ValueError("Log format must be 'json' or 'console'")
        return v


class EngineConfig(BaseSettings):
    """Challenge validation and settlement settings."""

    default_reserve_capacity: int = Field(
        100, description="Participant count used for the reserve when a challenge has no cap", ge=1
    )
    default_allowed_breaks: int = Field(1, description="Default streak grace budget", ge=0)
    max_workers: int = Field(1, description="Parallel validation workers", ge=1, le=64)
    participant_timeout_seconds: float = Field(
        30.0, description="Time bound for one participant's validation", gt=0
    )
    batch_size: int = Field(500, description="Participants loaded per orchestrator pass", ge=1)

    model_config = SettingsConfigDict(env_prefix="ENGINE_")


class LevelsConfig(BaseSettings):
    """Level calculation and weekly payout settings."""

    active_window_days: int = Field(30, description="Window for active users/students", ge=1, le=365)
    answer_lookback_hours: int = Field(24, description="Recent answers that trigger recalculation", ge=1)
    creator_lookback_days: int = Field(7, description="Recent creator sessions that trigger recalculation", ge=1)
    payouts_enabled: bool = Field(True, description="Process weekly tier payouts")
    pending_grace_minutes: int = Field(
        30, description="Age after which a pending payout is treated as abandoned and paid again", ge=0
    )

    model_config = SettingsConfigDict(env_prefix="LEVELS_")


class AppSettings(BaseSettings):
    """Main application settings with all subsystem configurations."""

    app_name: str = Field("Playtest Rewards", description="Application name")
    environment: str = Field("development", description="Environment name")
    debug: bool = Field(False, description="Debug mode")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    levels: LevelsConfig = Field(default_factory=LevelsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment name."""
        valid_envs = {"development", "testing", "staging", "production"}
        if v not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v

    def validate_production(self) -> None:
        """Reject settings that are unsafe outside development."""
        errors = []

        if self.environment == "production":
            if self.debug:
                errors.append("Debug mode must be disabled in production")
            if self.database.is_sqlite:
                errors.append("SQLite is not supported in production")
            if self.database.echo:
                errors.append("SQL echo must be disabled in production")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Global settings instance
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get application settings singleton."""
    global _settings
    if _settings is None:
        _settings = AppSettings()
        _settings.validate_production()
    return _settings


def reload_settings() -> AppSettings:
    """Reload settings from environment."""
    global _settings
    _settings = AppSettings()
    _settings.validate_production()
    return _settings
