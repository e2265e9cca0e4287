"""Pure pricing functions for bookings, extensions, modifications and overstays.

All amounts are integer cents. Intermediate arithmetic uses ``Decimal`` and every
monetary output is rounded to the cent with ROUND_HALF_UP, except overstay
accrual which always rounds up so a partial cent is never lost to the host.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from spotbook.settings import settings

SECONDS_PER_HOUR = Decimal(3600)
ONE_CENT = Decimal("1")


@dataclass(frozen=True)
class PricingRates:
    driver_markup_rate: Decimal
    service_fee_rate: Decimal
    host_platform_fee_rate: Decimal

    @classmethod
    def from_settings(cls, app_settings=None) -> "PricingRates":
        source = app_settings or settings
        return cls(
            driver_markup_rate=Decimal(str(source.pricing_driver_markup_rate)),
            service_fee_rate=Decimal(str(source.pricing_service_fee_rate)),
            host_platform_fee_rate=Decimal(str(source.pricing_host_platform_fee_rate)),
        )


@dataclass(frozen=True)
class BasePricing:
    driver_hourly_rate_cents: int
    driver_subtotal_cents: int
    service_fee_cents: int
    driver_total_cents: int


@dataclass(frozen=True)
class BookingQuote:
    hours: Decimal
    driver_hourly_rate_cents: int
    subtotal_cents: int
    service_fee_cents: int
    ev_charging_fee_cents: int
    total_cents: int


@dataclass(frozen=True)
class ModificationQuote:
    old_hours: Decimal
    new_hours: Decimal
    new_total_cents: int
    delta_cents: int

    @property
    def is_charge(self) -> bool:
        return self.delta_cents > 0

    @property
    def is_refund(self) -> bool:
        return self.delta_cents < 0


@dataclass(frozen=True)
class HostPayout:
    host_gross_cents: int
    platform_fee_cents: int
    host_net_cents: int


def round_cents(amount: Decimal | int) -> int:
    return int(Decimal(amount).quantize(ONE_CENT, rounding=ROUND_HALF_UP))


def ceil_cents(amount: Decimal | int) -> int:
    return int(Decimal(amount).quantize(ONE_CENT, rounding=ROUND_CEILING))


def hours_between(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_HOUR


def _rates(rates: PricingRates | None) -> PricingRates:
    return rates or PricingRates.from_settings()


def driver_hourly_rate(host_rate_cents: int, rates: PricingRates | None = None) -> int:
    resolved = _rates(rates)
    return round_cents(Decimal(host_rate_cents) * (1 + resolved.driver_markup_rate))


def base_pricing(host_rate_cents: int, hours: Decimal, rates: PricingRates | None = None) -> BasePricing:
    resolved = _rates(rates)
    hourly = driver_hourly_rate(host_rate_cents, resolved)
    subtotal = round_cents(Decimal(hourly) * Decimal(hours))
    fee = round_cents(Decimal(subtotal) * resolved.service_fee_rate)
    return BasePricing(
        driver_hourly_rate_cents=hourly,
        driver_subtotal_cents=subtotal,
        service_fee_cents=fee,
        driver_total_cents=subtotal + fee,
    )


def extension_cost(
    host_rate_cents: int, extension_hours: Decimal, rates: PricingRates | None = None
) -> BasePricing:
    return base_pricing(host_rate_cents, extension_hours, rates)


def ev_charging_fee(premium_cents_per_hour: int, hours: Decimal) -> int:
    if premium_cents_per_hour <= 0:
        return 0
    return round_cents(Decimal(premium_cents_per_hour) * Decimal(hours))


def quote_booking(
    host_rate_cents: int,
    hours: Decimal,
    *,
    ev_premium_cents_per_hour: int = 0,
    will_use_ev_charging: bool = False,
    rates: PricingRates | None = None,
) -> BookingQuote:
    pricing = base_pricing(host_rate_cents, hours, rates)
    ev_fee = ev_charging_fee(ev_premium_cents_per_hour, hours) if will_use_ev_charging else 0
    return BookingQuote(
        hours=Decimal(hours),
        driver_hourly_rate_cents=pricing.driver_hourly_rate_cents,
        subtotal_cents=pricing.driver_subtotal_cents,
        service_fee_cents=pricing.service_fee_cents,
        ev_charging_fee_cents=ev_fee,
        total_cents=pricing.driver_total_cents + ev_fee,
    )


def modification_delta(
    host_rate_cents: int,
    old_hours: Decimal,
    new_hours: Decimal,
    already_charged_cents: int,
    *,
    ev_charging_fee_cents: int = 0,
    rates: PricingRates | None = None,
) -> ModificationQuote:
    # The EV fee is a creation-time snapshot and is carried over unchanged.
    new_total = base_pricing(host_rate_cents, new_hours, rates).driver_total_cents + ev_charging_fee_cents
    return ModificationQuote(
        old_hours=Decimal(old_hours),
        new_hours=Decimal(new_hours),
        new_total_cents=new_total,
        delta_cents=new_total - already_charged_cents,
    )


def overstay_accrual(
    grace_end: datetime,
    now: datetime,
    rate_cents_per_hour: int | None = None,
) -> int:
    rate = settings.overstay_rate_cents_per_hour if rate_cents_per_hour is None else rate_cents_per_hour
    if now <= grace_end:
        return 0
    return ceil_cents(Decimal(rate) * hours_between(grace_end, now))


def host_payout(host_rate_cents: int, hours: Decimal, rates: PricingRates | None = None) -> HostPayout:
    resolved = _rates(rates)
    gross = round_cents(Decimal(host_rate_cents) * Decimal(hours))
    platform_fee = round_cents(Decimal(gross) * resolved.host_platform_fee_rate)
    return HostPayout(
        host_gross_cents=gross,
        platform_fee_cents=platform_fee,
        host_net_cents=gross - platform_fee,
    )
