from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from spotbook.domain.pricing import policy
from spotbook.domain.pricing.policy import PricingRates

RATES = PricingRates(
    driver_markup_rate=Decimal("0.10"),
    service_fee_rate=Decimal("0.15"),
    host_platform_fee_rate=Decimal("0.10"),
)
GRACE_END = datetime(2026, 3, 2, 18, 10, tzinfo=timezone.utc)


def test_base_pricing_applies_markup_then_service_fee():
    pricing = policy.base_pricing(1000, Decimal(4), RATES)

    assert pricing.driver_hourly_rate_cents == 1100
    assert pricing.driver_subtotal_cents == 4400
    assert pricing.service_fee_cents == 660
    assert pricing.driver_total_cents == 5060


def test_rounding_is_half_up_to_the_cent():
    assert policy.round_cents(Decimal("2.5")) == 3
    assert policy.round_cents(Decimal("2.49")) == 2
    assert policy.driver_hourly_rate(999, RATES) == 1099

    pricing = policy.base_pricing(1000, Decimal("1.5"), RATES)
    assert pricing.driver_subtotal_cents == 1650
    assert pricing.service_fee_cents == 248
    assert pricing.driver_total_cents == 1898


def test_hours_between_is_fractional():
    start = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    assert policy.hours_between(start, start + timedelta(minutes=90)) == Decimal("1.5")
    assert policy.hours_between(start, start + timedelta(minutes=15)) == Decimal("0.25")


def test_extension_cost_uses_the_same_formula_as_a_booking():
    assert policy.extension_cost(1000, Decimal(2), RATES) == policy.base_pricing(1000, Decimal(2), RATES)
    assert policy.extension_cost(1000, Decimal(2), RATES).driver_total_cents == 2530


def test_quote_adds_ev_fee_only_when_charging_is_used():
    with_ev = policy.quote_booking(
        1000, Decimal(4), ev_premium_cents_per_hour=200, will_use_ev_charging=True, rates=RATES
    )
    without_ev = policy.quote_booking(
        1000, Decimal(4), ev_premium_cents_per_hour=200, will_use_ev_charging=False, rates=RATES
    )

    assert with_ev.ev_charging_fee_cents == 800
    assert with_ev.total_cents == 5860
    assert without_ev.ev_charging_fee_cents == 0
    assert without_ev.total_cents == 5060


def test_modification_delta_charges_or_refunds_the_difference():
    longer = policy.modification_delta(1000, Decimal(4), Decimal(5), 5060, rates=RATES)
    shorter = policy.modification_delta(1000, Decimal(4), Decimal(3), 5060, rates=RATES)
    same = policy.modification_delta(1000, Decimal(4), Decimal(4), 5060, rates=RATES)

    assert (longer.new_total_cents, longer.delta_cents) == (6325, 1265)
    assert longer.is_charge and not longer.is_refund
    assert (shorter.new_total_cents, shorter.delta_cents) == (3795, -1265)
    assert shorter.is_refund and not shorter.is_charge
    assert same.delta_cents == 0
    assert not same.is_charge and not same.is_refund


def test_modification_keeps_the_ev_fee_snapshot():
    quote = policy.modification_delta(
        1000, Decimal(4), Decimal(3), 5860, ev_charging_fee_cents=800, rates=RATES
    )

    assert quote.new_total_cents == 4595
    assert quote.delta_cents == -1265


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(0), 0),
        (timedelta(seconds=1), 1),
        (timedelta(minutes=20), 834),
        (timedelta(minutes=30), 1250),
        (timedelta(hours=2), 5000),
    ],
)
def test_overstay_accrual_rounds_up_to_the_cent(elapsed, expected):
    assert policy.overstay_accrual(GRACE_END, GRACE_END + elapsed, 2500) == expected


def test_overstay_accrual_is_zero_before_grace_end():
    assert policy.overstay_accrual(GRACE_END, GRACE_END - timedelta(minutes=5), 2500) == 0


def test_host_payout_deducts_platform_fee_from_base_rate():
    payout = policy.host_payout(1000, Decimal(4), RATES)

    assert payout.host_gross_cents == 4000
    assert payout.platform_fee_cents == 400
    assert payout.host_net_cents == 3600


def test_rates_default_to_settings():
    rates = PricingRates.from_settings()

    assert rates.driver_markup_rate == Decimal("0.10")
    assert rates.service_fee_rate == Decimal("0.15")
    assert policy.base_pricing(1000, Decimal(4)).driver_total_cents == 5060
