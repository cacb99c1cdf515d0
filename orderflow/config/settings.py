"""Application settings using Pydantic for environment-based configuration."""
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PricingConfig(BaseModel):
    """
    Immutable pricing snapshot used for cart and order totals.

    Passed explicitly into every calculation and stored on the order, so
    totals can be reproduced from the configuration that was current when
    the order was created.
    """

    model_config = ConfigDict(frozen=True)

    currency: str = "INR"
    tax_rate: Decimal = Decimal("0.18")
    shipping_rates: Dict[str, int] = Field(
        default_factory=lambda: {"standard": 0, "express": 15000, "overnight": 30000}
    )

    def calculate_tax(self, taxable_amount: int) -> int:
        """Flat-rate tax in minor units, rounded half-up."""
        tax = (Decimal(taxable_amount) * self.tax_rate).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(tax)

    def shipping_for(self, method: str) -> Optional[int]:
        """Shipping cost for a method id, or None when the method is unknown."""
        return self.shipping_rates.get(method)

    def as_snapshot(self) -> Dict[str, object]:
        """JSON-safe copy stored alongside the order."""
        return {
            "currency": self.currency,
            "tax_rate": str(self.tax_rate),
            "shipping_rates": dict(self.shipping_rates),
        }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Gateway Configuration
    razorpay_key_id: str = Field(..., description="Gateway public key id (rzp_test_...)")
    razorpay_key_secret: str = Field(..., description="Gateway secret used for callback HMACs")
    razorpay_webhook_secret: str = Field(
        default="", description="Webhook signing secret (empty disables webhooks)"
    )
    razorpay_api_base: str = Field(
        default="https://api.razorpay.com/v1", description="Gateway REST API base URL"
    )
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway HTTP timeout")
    gateway_max_attempts: int = Field(default=4, description="Attempts for transient errors")
    gateway_retry_base_delay: float = Field(
        default=1.0, description="Base delay for gateway retry backoff (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for idempotency cache and rate limits"
    )

    # Application Configuration
    app_name: str = Field(default="orderflow", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Security
    admin_api_key: str = Field(default="", description="Key required for admin endpoints")
    admin_api_key_header: str = Field(default="X-Admin-Key", description="Admin key header name")

    # Rate Limiting (requests per minute per client)
    rate_limit_payment: int = Field(default=5, description="Payment endpoints limit")
    rate_limit_webhook: int = Field(default=100, description="Webhook endpoint limit")
    rate_limit_checkout: int = Field(default=10, description="Order creation limit")
    rate_limit_cart: int = Field(default=60, description="Cart endpoints limit")
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window")

    # Store / Pricing
    default_currency: str = Field(default="INR", description="Store currency")
    tax_rate: Decimal = Field(default=Decimal("0.18"), description="Flat tax rate")
    shipping_rates: Dict[str, int] = Field(
        default_factory=lambda: {"standard": 0, "express": 15000, "overnight": 30000},
        description="Shipping cost per method id, minor units",
    )
    default_location_id: str = Field(
        default="default", description="Inventory location used for reservations"
    )
    cart_ttl_days: int = Field(default=30, description="Cart lifetime in days")

    # Idempotency
    idempotency_success_ttl: int = Field(default=3600, description="Verified result TTL")
    idempotency_fraud_ttl: int = Field(default=86400, description="Fraud-blocked result TTL")

    # Retry / Reconciliation
    payment_max_retries: int = Field(default=3, description="Max retries per order")
    payment_retry_delay_minutes: int = Field(default=30, description="Cooldown before retrying")
    reconciliation_batch_size: int = Field(default=50, description="Max items per batch run")
    stale_payment_minutes: int = Field(default=15, description="Age before a pending payment is synced")
    cleanup_days_old: int = Field(default=30, description="Age of failures to archive")
    cleanup_min_days: int = Field(default=7, description="Smallest allowed cleanup age")
    retry_worker_interval_seconds: int = Field(default=300, description="Worker loop interval")

    # Fraud
    fraud_high_threshold: int = Field(default=60, description="Score at or above is high risk")
    fraud_medium_threshold: int = Field(default=30, description="Score at or above is medium risk")
    fraud_block_threshold: int = Field(default=80, description="Score at or above is blocked")
    fraud_domestic_country: str = Field(default="IN", description="Store home country")
    fraud_ip_blocklist: str = Field(default="", description="Blocked IPs (comma-separated)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("razorpay_key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        """Validate that the gateway key id has a test or live prefix."""
        if not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid gateway key id format. Must start with 'rzp_test_' or 'rzp_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_ip_blocklist(self) -> List[str]:
        return [ip.strip() for ip in self.fraud_ip_blocklist.split(",") if ip.strip()]

    def pricing_snapshot(self) -> PricingConfig:
        """Freeze the current pricing configuration."""
        return PricingConfig(
            currency=self.default_currency,
            tax_rate=self.tax_rate,
            shipping_rates=dict(self.shipping_rates),
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using gateway test keys."""
        return self.razorpay_key_id.startswith("rzp_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
