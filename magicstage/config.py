"""
Configuration management for the Magic Staging credit service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Ledger database (SQLite) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    path: str = Field(default="./data/ledger.db", description="Path to SQLite database file")
    busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="How long a writer waits for the database write lock",
    )
    transient_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a unit of work failing with a transient store error",
    )


class StripeConfig(BaseSettings):
    """Stripe configuration for credit purchases and payment webhooks."""

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook endpoint secret (whsec_...)")
    currency: str = Field(default="usd", min_length=3, max_length=3)
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum age of a webhook signature timestamp",
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.lower()

    @property
    def is_configured(self) -> bool:
        """Check if Stripe API calls can be made."""
        return bool(self.api_key)

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self.webhook_secret)


class AIProviderConfig(BaseSettings):
    """
    Image-generation provider configuration.

    Security: API keys are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="AI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Google AI API key")
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Generative Language API base URL",
    )
    model: str = Field(default="gemini-2.5-flash-image-preview")
    request_timeout_seconds: float = Field(
        default=90.0,
        ge=1.0,
        le=600.0,
        description="HTTP timeout for a single generation request",
    )
    cost_cents_per_image: int = Field(
        default=4,
        ge=0,
        description="Reported provider cost per generated image, for analytics only",
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if not v:
            return ""

        placeholder_patterns = ["your-api-key-here", "example", "dummy"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning("AI api_key appears to be a placeholder - staging will fail")
            return ""

        return v

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


class StagingConfig(BaseSettings):
    """Staging job and credit policy."""

    model_config = SettingsConfigDict(env_prefix="STAGING_", extra="ignore")

    credits_per_job: int = Field(default=1, ge=1, le=100)
    provider_timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        le=900.0,
        description="Deadline for the whole provider call; exceeded means failed + refund",
    )
    signup_bonus_credits: int = Field(default=3, ge=0, le=1000)
    stale_job_minutes: int = Field(
        default=30,
        ge=1,
        description="Jobs stuck in reserved/processing longer than this are failed and refunded",
    )
    max_prompt_length: int = Field(default=1000, ge=1, le=10000)

    @field_validator("stale_job_minutes")
    @classmethod
    def validate_stale_window(cls, v: int, info) -> int:
        timeout = info.data.get("provider_timeout_seconds")
        if timeout is not None and v * 60 <= timeout:
            raise ValueError(
                f"stale_job_minutes ({v}) must exceed provider_timeout_seconds ({timeout}s)"
            )
        return v


class ObjectStoreConfig(BaseSettings):
    """Local object store for room and staged images."""

    model_config = SettingsConfigDict(env_prefix="OBJECT_STORE_", extra="ignore")

    root_path: str = Field(default="./data/uploads")
    public_base_url: str = Field(default="/uploads")


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    max_request_body_size: int = Field(
        default=1 * 1024 * 1024,  # 1MB
        ge=1024,
        description="Maximum request body size in bytes (default: 1MB)",
    )
    staging_rate_limit: str = Field(
        default="30/minute",
        description="slowapi rate limit for staging job submission",
    )


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0, description="Preflight cache duration in seconds")

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        if self.allowed_headers == "*":
            return ["*"]
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(default=False, description="Colorize console output")

    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=2000.0, ge=0.0)

    service_name: str = Field(default="magic-staging")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the Magic Staging credit service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    ai: AIProviderConfig = Field(default_factory=AIProviderConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    object_store: ObjectStoreConfig = Field(default_factory=ObjectStoreConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Protects account opening, reconciliation and recovery endpoints
    admin_api_key: str | None = Field(default=None)

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """Reject placeholder admin keys so admin endpoints stay locked."""
        if not v:
            return None

        placeholder_patterns = ["your-api-key-here", "example", "dummy", "changeme"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning("admin_api_key seems too short to be secure - use at least 32 characters")

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.webhooks_enabled:
            logging.warning("STRIPE_WEBHOOK_SECRET not configured - payment webhooks will be rejected")

        if not self.stripe.is_configured:
            logging.warning("Stripe API key not configured - credit purchases disabled")

        if not self.ai.has_api_key:
            logging.warning("AI provider API key not configured - staging jobs will fail and refund")

        if self.ai.request_timeout_seconds > self.staging.provider_timeout_seconds:
            logging.warning(
                f"AI request timeout ({self.ai.request_timeout_seconds}s) exceeds staging "
                f"provider timeout ({self.staging.provider_timeout_seconds}s)"
            )


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
