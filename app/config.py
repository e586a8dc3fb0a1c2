"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")
    DATABASE_POOL_SIZE: int = Field(default=20)
    DATABASE_MAX_OVERFLOW: int = Field(default=40)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    SNAPSHOT_CACHE_TTL_SECONDS: int = Field(default=300)

    # Store APIs
    STORE_API_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Apple
    APPLE_ROOT_CERTIFICATES: str = Field(
        default="",
        description="Comma-separated paths to Apple root CA certificates (DER or PEM)",
    )
    APPLE_ALLOW_UNVERIFIED_JWS: bool = Field(
        default=False,
        description="INSECURE: accept Apple JWS payloads without signature verification",
    )

    # Google
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = Field(
        default=None,
        description="Fallback service account JSON (inline or file path) for apps without one",
    )
    GOOGLE_PUBSUB_VERIFICATION_TOKEN: str = Field(default="")

    # Customer webhooks
    CUSTOMER_WEBHOOK_TIMEOUT_SECONDS: float = Field(default=30.0)
    CUSTOMER_WEBHOOK_MAX_RETRIES: int = Field(default=3)

    # Rate limits (requests per minute, per API key)
    RATE_LIMIT_PUBLIC_PER_MINUTE: int = Field(default=100)
    RATE_LIMIT_SECRET_PER_MINUTE: int = Field(default=1000)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def apple_root_certificate_paths(self) -> List[str]:
        """Parse APPLE_ROOT_CERTIFICATES into a list of paths."""
        return [p.strip() for p in self.APPLE_ROOT_CERTIFICATES.split(",") if p.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://", 1
            )
        return self.DATABASE_URL

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def allow_unverified_jws(self) -> bool:
        """Unverified Apple payloads are never accepted in production."""
        return self.APPLE_ALLOW_UNVERIFIED_JWS and not self.is_production

    @field_validator("CUSTOMER_WEBHOOK_MAX_RETRIES")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """At least one delivery attempt is always made."""
        if v < 1:
            raise ValueError("CUSTOMER_WEBHOOK_MAX_RETRIES must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
