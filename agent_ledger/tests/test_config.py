from decimal import Decimal

import pytest
from pydantic import ValidationError

from agent_ledger.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MINIMUM_PAYOUT_AMOUNT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.minimum_payout_amount == Decimal("3")
        assert settings.currency == "USD"
        assert settings.max_transaction_retries == 3
        assert settings.commission_period_months == 24
        assert settings.tier_bonus_rate("gold") == Decimal("0")
        assert settings.cors_origins == ["*"]

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MINIMUM_PAYOUT_AMOUNT", "5.00")
        monkeypatch.setenv("TIER_BONUS_RATES", '{"gold": "2.5"}')
        monkeypatch.setenv("CORS_ORIGINS", "https://admin.example.com, https://agents.example.com")

        settings = Settings(_env_file=None)

        assert settings.minimum_payout_amount == Decimal("5.00")
        assert settings.tier_bonus_rate("gold") == Decimal("2.5")
        assert settings.tier_bonus_rate("silver") == Decimal("0")
        assert settings.cors_origins == ["https://admin.example.com", "https://agents.example.com"]

    def test_minimum_payout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, minimum_payout_amount=Decimal("0"))
