"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./paygate.db", description="Async SQLAlchemy URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="paygate", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=5000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5000",
        description="CORS allowed origins (comma-separated)",
    )

    # Gateway transport
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for every outbound provider call (seconds)"
    )
    gateway_query_max_attempts: int = Field(
        default=3, description="Attempts for read-only status queries"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive provider failures before the circuit opens"
    )
    circuit_breaker_reset_seconds: int = Field(
        default=60, description="Seconds before an open circuit is probed again"
    )

    # Reconciliation
    currency: str = Field(default="VND", description="Settlement currency")
    amount_tolerance: Decimal = Field(
        default=Decimal("0.01"), description="Accepted rounding difference between amounts"
    )

    # VNPay
    vnpay_tmn_code: str = Field(default="", description="VNPay terminal code")
    vnpay_hash_secret: str = Field(default="", description="VNPay HMAC-SHA512 secret")
    vnpay_payment_url: str = Field(
        default="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        description="VNPay hosted payment page",
    )
    vnpay_api_url: str = Field(
        default="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
        description="VNPay querydr/refund endpoint",
    )
    vnpay_return_url: str = Field(
        default="http://localhost:3000/payment/vnpay-return",
        description="Browser return URL after VNPay checkout",
    )
    vnpay_payment_ttl_minutes: int = Field(
        default=15, description="Lifetime of a VNPay checkout URL (minutes)"
    )

    # MoMo
    momo_partner_code: str = Field(default="", description="MoMo partner code")
    momo_access_key: str = Field(default="", description="MoMo access key")
    momo_secret_key: str = Field(default="", description="MoMo HMAC-SHA256 secret")
    momo_api_url: str = Field(
        default="https://test-payment.momo.vn/v2/gateway/api",
        description="MoMo API base (create, query, refund)",
    )
    momo_redirect_url: str = Field(
        default="http://localhost:3000/payment/momo-return",
        description="Browser return URL after MoMo checkout",
    )
    momo_ipn_url: str = Field(
        default="http://localhost:5000/webhooks/momo", description="MoMo IPN URL"
    )

    # ZaloPay
    zalopay_app_id: str = Field(default="", description="ZaloPay app id")
    zalopay_key1: str = Field(default="", description="ZaloPay key1 (create/query/refund)")
    zalopay_key2: str = Field(default="", description="ZaloPay key2 (callback)")
    zalopay_api_url: str = Field(
        default="https://sandbox.zalopay.vn/v001/tpe", description="ZaloPay API base"
    )
    zalopay_callback_url: str = Field(
        default="http://localhost:5000/webhooks/zalopay", description="ZaloPay callback URL"
    )
    zalopay_return_url: str = Field(
        default="http://localhost:3000/payment/zalopay-return",
        description="Browser return URL after ZaloPay checkout",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("amount_tolerance")
    @classmethod
    def validate_amount_tolerance(cls, v: Decimal) -> Decimal:
        """Tolerance is a rounding allowance, never a discount."""
        if v < 0 or v > Decimal("1"):
            raise ValueError("amount_tolerance must be between 0 and 1 currency unit")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
