"""Configuration management using pydantic-settings."""
from decimal import Decimal
from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables or `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field("sqlite:///./agent_ledger.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(False, description="Echo SQL statements")
    max_transaction_retries: int = Field(3, description="Attempts before an optimistic conflict is surfaced")

    # Money
    currency: str = Field("USD", description="Ledger currency")
    minimum_payout_amount: Decimal = Field(Decimal("3"), description="Smallest payout an agent may request")
    default_commission_rate: Decimal = Field(Decimal("10"), description="Commission percentage for new agents")
    tier_bonus_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "bronze": Decimal("0"),
            "silver": Decimal("0"),
            "gold": Decimal("0"),
            "platinum": Decimal("0"),
        },
        description="Extra commission percentage per agent tier",
    )
    commission_period_months: int = Field(
        24, gt=0, description="Months a referred customer earns commission from their first referral"
    )
    payout_fee_rates: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Percentage fee per payout method",
    )
    payout_flat_fees: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Flat fee per payout method",
    )

    # Application
    app_name: str = Field("Agent Ledger API", description="Application title")
    log_level: str = Field("INFO", description="Logging level")
    log_json: bool = Field(False, description="Emit console logs as JSON")
    log_file: str | None = Field(None, description="Rotating JSON log file path")
    cors_origins: str | list[str] = Field(default="*", description="Allowed CORS origins (comma-separated in env)")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        if isinstance(v, list):
            return [str(x) for x in v]
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return []

    @field_validator("minimum_payout_amount")
    @classmethod
    def check_minimum_payout(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("minimum_payout_amount must be positive")
        return v

    def tier_bonus_rate(self, tier: str) -> Decimal:
        return self.tier_bonus_rates.get(tier, Decimal("0"))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
