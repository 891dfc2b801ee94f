"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="storefront-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(default="", description="Supabase signing key JWK (JSON string) for JWT token verification")
    admin_role: str = Field(default="admin", description="JWT role claim value that grants catalog admin rights")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (for frontend)")
    checkout_currency: str = Field(default="usd", description="Currency for checkout sessions and bundle prices")

    # Billing provider resilience
    billing_timeout_seconds: int = Field(default=10, description="HTTP timeout for a single Stripe request")
    billing_max_attempts: int = Field(default=4, description="Attempts per Stripe call (first try + retries)")
    billing_retry_min_seconds: float = Field(default=1.0, description="Initial retry backoff")
    billing_retry_max_seconds: float = Field(default=10.0, description="Maximum retry backoff")
    circuit_breaker_threshold: int = Field(default=5, description="Consecutive failures before the breaker opens")
    circuit_breaker_reset_seconds: int = Field(default=60, description="Seconds the breaker stays open")

    # Cart / checkout
    guest_cart_ttl_days: int = Field(default=30, description="Days until a guest cart expires")
    metadata_key_budget: int = Field(default=50, description="Maximum scalar keys in checkout metadata")
    bundle_description_limit: int = Field(default=500, description="Maximum length of a bundle product description")

    # Rate limiting (requests per window, per operation class)
    rate_limit_window_seconds: int = Field(default=60, description="Sliding window length in seconds")
    rate_limit_cart_requests: int = Field(default=100, description="Cart operations per window")
    rate_limit_checkout_requests: int = Field(default=10, description="Checkout operations per window")
    rate_limit_catalog_requests: int = Field(default=300, description="Catalog reads per window")
    rate_limit_auth_requests: int = Field(default=5, description="Auth operations per window")
    rate_limit_webhook_requests: int = Field(default=50, description="Webhook deliveries per window")
    rate_limit_cleanup_interval_seconds: int = Field(default=300, description="Interval between stale record sweeps")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
