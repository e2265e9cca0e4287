from decimal import Decimal

import pytest
from pydantic import ValidationError

from spotbook.domain.pricing.policy import PricingRates
from spotbook.settings import Settings

PROD_BASE = {
    "app_env": "prod",
    "testing": False,
    "payment_mode": "stripe",
    "guest_token_secret": "a-real-secret",
    "metrics_token": "scrape-secret",
}


def test_prod_settings_accept_complete_configuration():
    configured = Settings(**PROD_BASE)

    assert configured.app_env == "prod"


@pytest.mark.parametrize(
    "override",
    [
        {"guest_token_secret": "dev-guest-token-secret"},
        {"payment_mode": "fake"},
        {"metrics_enabled": True, "metrics_token": None},
        {"testing": True},
    ],
)
def test_prod_settings_reject_unsafe_values(override):
    with pytest.raises(ValidationError):
        Settings(**{**PROD_BASE, **override})


def test_pricing_rates_are_bounded():
    with pytest.raises(ValidationError):
        Settings(app_env="dev", pricing_service_fee_rate=Decimal("1.5"))


def test_extension_bounds_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(app_env="dev", extension_min_hours=Decimal("2"), extension_max_hours=Decimal("1"))


def test_pricing_rates_follow_settings():
    configured = Settings(app_env="dev", pricing_service_fee_rate=Decimal("0.20"))

    rates = PricingRates.from_settings(configured)

    assert rates.service_fee_rate == Decimal("0.20")
    assert rates.driver_markup_rate == Decimal("0.10")
