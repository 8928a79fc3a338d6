"""
Delivery pricing and membership discounts.

Quotes are computed in Decimal and rounded half-up to cents so the same
inputs always produce the same amount.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import FrozenSet, Mapping, Union

from .errors import InvalidConfig

CENT = Decimal("0.01")

Number = Union[int, float, Decimal, str]


class ServiceType(str, Enum):
    """Kinds of delivery a customer can request."""
    FOOD = "FOOD"
    STORE = "STORE"
    FRAGILE = "FRAGILE"
    CONCIERGE = "CONCIERGE"


class MembershipTier(str, Enum):
    """Membership levels; higher tiers earn a larger discount."""
    BASIC = "BASIC"
    PLUS = "PLUS"
    EXECUTIVE = "EXECUTIVE"


@dataclass(frozen=True)
class PricingConfig:
    """Tunable pricing constants."""
    base_fee: Decimal = Decimal("5.00")
    per_mile: Decimal = Decimal("1.50")
    service_fee: Decimal = Decimal("2.99")
    driver_payout_rate: Decimal = Decimal("0.80")
    surcharges: Mapping[ServiceType, Decimal] = field(default_factory=lambda: {
        ServiceType.FRAGILE: Decimal("2.50"),
        ServiceType.CONCIERGE: Decimal("3.00"),
    })
    discounts: Mapping[MembershipTier, Decimal] = field(default_factory=lambda: {
        MembershipTier.PLUS: Decimal("0.10"),
        MembershipTier.EXECUTIVE: Decimal("0.20"),
    })
    service_fee_waived_tiers: FrozenSet[MembershipTier] = frozenset({MembershipTier.EXECUTIVE})

    def surcharge_for(self, service_type: ServiceType) -> Decimal:
        return self.surcharges.get(service_type, Decimal("0"))

    def discount_for(self, tier: MembershipTier) -> Decimal:
        return self.discounts.get(tier, Decimal("0"))


DEFAULT_PRICING = PricingConfig()


@dataclass(frozen=True)
class PriceBreakdown:
    """Itemised quote for checkout display."""
    base_price: Decimal         # before membership discount
    discount: Decimal
    discounted_price: Decimal   # the delivery quote
    service_fee: Decimal
    total: Decimal


def coerce_service_type(value: object) -> ServiceType:
    """Parse a service type, accepting enum members or case-insensitive names.

    Raises:
        InvalidConfig: If the value is not a known service type
    """
    if isinstance(value, ServiceType):
        return value
    try:
        return ServiceType(str(value).upper())
    except ValueError:
        valid = [s.value for s in ServiceType]
        raise InvalidConfig(f"Unknown service type {value!r}; expected one of {valid}")


def coerce_tier(value: object) -> MembershipTier:
    """Parse a membership tier, accepting enum members or case-insensitive names.

    Raises:
        InvalidConfig: If the value is not a known tier
    """
    if isinstance(value, MembershipTier):
        return value
    try:
        return MembershipTier(str(value).upper())
    except ValueError:
        valid = [t.value for t in MembershipTier]
        raise InvalidConfig(f"Unknown membership tier {value!r}; expected one of {valid}")


def _to_miles(miles: Number) -> Decimal:
    if isinstance(miles, bool):
        raise InvalidConfig("miles must be a number")
    try:
        value = Decimal(str(miles))
    except InvalidOperation:
        raise InvalidConfig(f"miles must be a number, got {miles!r}")
    if not value.is_finite():
        raise InvalidConfig("miles must be finite")
    if value < 0:
        raise InvalidConfig(f"miles must be >= 0, got {miles}")
    return value


def price_breakdown(
    miles: Number,
    service_type: object,
    tier: object,
    config: PricingConfig = DEFAULT_PRICING,
) -> PriceBreakdown:
    """Itemise a delivery quote.

    Args:
        miles: Trip distance, must be >= 0
        service_type: ServiceType or its name
        tier: MembershipTier or its name
        config: Pricing constants

    Returns:
        PriceBreakdown with every amount rounded half-up to cents

    Raises:
        InvalidConfig: For negative/non-finite miles or unknown service type/tier
    """
    distance = _to_miles(miles)
    service = coerce_service_type(service_type)
    membership = coerce_tier(tier)

    raw = config.base_fee + distance * config.per_mile + config.surcharge_for(service)
    discounted = max(Decimal("0"), raw * (Decimal("1") - config.discount_for(membership)))

    base_price = raw.quantize(CENT, rounding=ROUND_HALF_UP)
    discounted_price = discounted.quantize(CENT, rounding=ROUND_HALF_UP)

    if membership in config.service_fee_waived_tiers:
        service_fee = Decimal("0.00")
    else:
        service_fee = config.service_fee.quantize(CENT, rounding=ROUND_HALF_UP)

    return PriceBreakdown(
        base_price=base_price,
        discount=base_price - discounted_price,
        discounted_price=discounted_price,
        service_fee=service_fee,
        total=discounted_price + service_fee,
    )


def estimate_price(
    miles: Number,
    service_type: object,
    tier: object,
    config: PricingConfig = DEFAULT_PRICING,
) -> Decimal:
    """Quote a delivery: base fee plus mileage plus surcharge, less the tier discount.

    Returns:
        Quote in currency units with 2-decimal precision (half-up rounding)

    Raises:
        InvalidConfig: For negative/non-finite miles or unknown service type/tier
    """
    return price_breakdown(miles, service_type, tier, config).discounted_price


def driver_payout(amount: Number, config: PricingConfig = DEFAULT_PRICING) -> Decimal:
    """Driver share of a quoted price, rounded down to cents."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidConfig(f"amount must be a number, got {amount!r}")
    if not value.is_finite() or value < 0:
        raise InvalidConfig(f"amount must be a non-negative number, got {amount}")
    return (value * config.driver_payout_rate).quantize(CENT, rounding=ROUND_DOWN)
