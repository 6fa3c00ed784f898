from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./kitchen.db"
    database_echo: bool = False

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # Storage transaction runner
    transaction_max_attempts: int = 3
    transaction_retry_base_delay_seconds: float = 0.05

    # Loyalty accrual
    loyalty_point_value: Decimal = Decimal("0.10")
    loyalty_points_expiry_days: int = 30
    loyalty_admin_adjustment_limit: int = 10_000
    loyalty_ineligible_keywords: list[str] = Field(
        default_factory=lambda: [
            "tax",
            "tip",
            "delivery",
            "alcohol",
            "beer",
            "wine",
            "liquor",
            "gift card",
        ]
    )

    @field_validator("loyalty_ineligible_keywords", mode="before")
    @classmethod
    def _parse_keyword_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    # Volunteer discount
    volunteer_discount_threshold: Decimal = Decimal("50.00")
    volunteer_discount_rate: Decimal = Decimal("0.10")

    # Redemptions
    redemption_validity_days: int = 30

    # Spin wheel
    spin_cost_points: int = 10
    spin_cost_points_senior: int = 5
    spin_cooldown_hours: int = 24

    # Analytics alert thresholds
    analytics_giveback_target_percentage: Decimal = Decimal("8.0")
    analytics_point_liability_threshold: Decimal = Decimal("10000")
    analytics_jackpot_rate_target: float = 0.02


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
