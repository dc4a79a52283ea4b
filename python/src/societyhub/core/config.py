"""
Application configuration using Pydantic Settings.

Loads configuration from environment variables with validation.
Every field has a default so the package can be imported (and tested)
without any environment prepared.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable loading."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )
    
    # Environment
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    
    # Database
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./societyhub.db",
        description="Async SQLAlchemy URL of the record store"
    )
    DATABASE_ECHO: bool = Field(default=False)
    
    # Supabase auth (GoTrue)
    SUPABASE_URL: str = Field(default="")
    SUPABASE_KEY: str = Field(default="")
    SUPABASE_JWT_SECRET: str = Field(
        default="",
        description="JWT secret of the auth backend; empty disables signature checks"
    )
    AUTH_HTTP_TIMEOUT: float = Field(default=10.0)
    
    # Identity store
    SESSION_WATCHDOG_TIMEOUT: float = Field(
        default=5.0,
        description="Seconds before the initial session probe gives up"
    )
    
    # Persistence resilience
    PERSISTENCE_RETRY_ATTEMPTS: int = Field(default=3)
    PERSISTENCE_RETRY_MAX_WAIT: float = Field(default=4.0)
    
    # Occupancy
    OCCUPANCY_WRITE_POLICY: str = Field(
        default="last_writer_wins",
        description="last_writer_wins or optimistic (flat version check)"
    )
    DEFAULT_SOCIETY_TOTAL_FLATS: int = Field(default=10)
    AUTO_FLAT_BHK_TYPE: str = Field(default="2BHK")
    AUTO_FLAT_AREA: float = Field(default=1200)
    
    # Monitoring
    SENTRY_DSN: str = Field(default="")
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)
    
    @field_validator("OCCUPANCY_WRITE_POLICY")
    @classmethod
    def validate_write_policy(cls, v: str) -> str:
        """Only the two documented concurrency policies are accepted."""
        normalized = v.strip().lower()
        if normalized not in ("last_writer_wins", "optimistic"):
            raise ValueError(
                "OCCUPANCY_WRITE_POLICY must be 'last_writer_wins' or 'optimistic'"
            )
        return normalized
    
    @field_validator("SESSION_WATCHDOG_TIMEOUT")
    @classmethod
    def validate_watchdog_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SESSION_WATCHDOG_TIMEOUT must be positive")
        return v
    
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"
    
    @property
    def optimistic_occupancy(self) -> bool:
        return self.OCCUPANCY_WRITE_POLICY == "optimistic"


# Global settings instance
settings = Settings()
