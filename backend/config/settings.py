"""
Application Settings and Configuration Management

Uses pydantic-settings for type-safe configuration from environment variables.
"""

from typing import Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_name: str = "ElPortal Data API"
    app_version: str = "0.1.0"
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # API Configuration
    api_prefix: str = "/api"
    backend_port: int = Field(default=8000, validation_alias="BACKEND_PORT")

    # Durable cache - Redis
    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")
    redis_password: Optional[str] = Field(default=None, validation_alias="REDIS_PASSWORD")
    kv_key_prefix: str = Field(default="", validation_alias="KV_KEY_PREFIX")

    # Upstream - Energi Data Service
    energidata_base_url: str = Field(
        default="https://api.energidataservice.dk/dataset",
        validation_alias="ENERGIDATA_BASE_URL",
    )
    upstream_timeout_seconds: float = Field(default=8.0, validation_alias="UPSTREAM_TIMEOUT_SECONDS")
    upstream_user_agent: str = Field(default="DinElPortal/1.0", validation_alias="UPSTREAM_USER_AGENT")
    upstream_retry_attempts: int = Field(default=3, ge=1, validation_alias="UPSTREAM_RETRY_ATTEMPTS")
    upstream_retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, validation_alias="UPSTREAM_RETRY_BASE_DELAY_SECONDS"
    )
    upstream_retry_jitter: float = Field(default=0.0, ge=0, le=1, validation_alias="UPSTREAM_RETRY_JITTER")
    # False stops retrying 4xx answers that are not treated as "no data"
    upstream_retry_client_errors: bool = Field(default=True, validation_alias="UPSTREAM_RETRY_CLIENT_ERRORS")
    # Total time a single request may spend retrying upstream; "null" in the env disables it
    upstream_request_budget_seconds: Optional[float] = Field(
        default=9.0, validation_alias="UPSTREAM_REQUEST_BUDGET_SECONDS"
    )

    # Upstream rate limit (shared by every route)
    upstream_rate_limit_requests: int = Field(default=40, validation_alias="UPSTREAM_RATE_LIMIT_REQUESTS")
    upstream_rate_limit_window_seconds: float = Field(
        default=10.0, validation_alias="UPSTREAM_RATE_LIMIT_WINDOW_SECONDS"
    )
    upstream_rate_limit_wait_seconds: float = Field(
        default=5.0, validation_alias="UPSTREAM_RATE_LIMIT_WAIT_SECONDS"
    )

    # Cache TTLs (seconds)
    tariff_cache_ttl: int = Field(default=24 * 60 * 60, validation_alias="TARIFF_CACHE_TTL")
    tariff_fallback_ttl: int = Field(default=48 * 60 * 60, validation_alias="TARIFF_FALLBACK_TTL")
    tariff_empty_ttl: int = Field(default=900, validation_alias="TARIFF_EMPTY_TTL")
    pricelist_cache_ttl: int = Field(default=3600, validation_alias="PRICELIST_CACHE_TTL")
    pricelist_fallback_ttl: int = Field(default=7200, validation_alias="PRICELIST_FALLBACK_TTL")
    spot_price_cache_ttl: int = Field(default=300, validation_alias="SPOT_PRICE_CACHE_TTL")
    spot_price_fallback_ttl: int = Field(default=3600, validation_alias="SPOT_PRICE_FALLBACK_TTL")

    # In-process memory cache
    memory_cache_capacity: int = Field(default=100, ge=1, validation_alias="MEMORY_CACHE_CAPACITY")

    # Monitoring
    sentry_dsn: Optional[str] = Field(default=None, validation_alias="SENTRY_DSN")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        # Lets optional numbers such as the request budget be switched off from the env
        env_parse_none_str="null",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid"""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("log_level must be a standard logging level name")
        return level

    @field_validator("energidata_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_fallback_ttls(self) -> "Settings":
        """The latest-good key must outlive the primary key it backs up"""
        pairs = {
            "tariff": (self.tariff_cache_ttl, self.tariff_fallback_ttl),
            "pricelist": (self.pricelist_cache_ttl, self.pricelist_fallback_ttl),
            "spot_price": (self.spot_price_cache_ttl, self.spot_price_fallback_ttl),
        }
        for name, (primary_ttl, fallback_ttl) in pairs.items():
            if fallback_ttl < primary_ttl:
                raise ValueError(
                    f"{name}_fallback_ttl ({fallback_ttl}) must be >= {name}_cache_ttl ({primary_ttl})"
                )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment == "development"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance (FastAPI dependency-injection compatible)."""
    return settings
