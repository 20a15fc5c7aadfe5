from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "Asia/Singapore"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth (tokens are issued by the external auth layer)
    JWT_SECRET: str = "test-jwt-secret"
    JWT_ALGORITHM: str = "HS256"

    # Pricing
    CURRENCY: str = "USD"
    TAX_RATE: Decimal = Decimal("0")
    BUNDLE_DISCOUNT_RATE: Decimal = Decimal("0.10")
    DELIVERY_FEE: Decimal = Decimal("1.50")

    # Refunds and returns
    REFUND_WINDOW_DAYS: int = 14
    RETURN_WINDOW_DAYS: int = 7
    REFUND_TOLERANCE: Decimal = Decimal("0.01")

    # Loyalty
    LOYALTY_POINTS_PER_DOLLAR: int = 1
    LOYALTY_ORDER_BONUS_POINTS: int = 0
    LOYALTY_REDEMPTION_ENABLED: bool = True
    LOYALTY_REDEMPTION_POINTS_PER_DOLLAR: int = 20  # 100 points = $5.00 off
    LOYALTY_REDEMPTION_STEP_POINTS: int = 100

    # Payment gateways
    GATEWAY_TIMEOUT: float = 15.0
    PAYPAL_API_URL: Optional[str] = None
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    STRIPE_API_URL: str = "https://api.stripe.com"
    STRIPE_SECRET_KEY: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
