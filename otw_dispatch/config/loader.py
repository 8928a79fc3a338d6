"""
Configuration management and loading.

Loads database, pricing and rate-limit settings from YAML with strict
validation. Every section is optional and falls back to built-in defaults.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from otw_dispatch.core.errors import InvalidConfig
from otw_dispatch.core.pricing import (
    DEFAULT_PRICING,
    MembershipTier,
    PricingConfig,
    ServiceType,
)
from otw_dispatch.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class RateLimitConfig:
    """Throttle applied to request submission, per requester."""
    interval_ms: int = 60_000
    max_requests: int = 5
    max_keys: Optional[int] = 10_000

    def __post_init__(self):
        """Validate limiter values are positive."""
        if self.interval_ms <= 0:
            raise InvalidConfig("interval_ms must be > 0")
        if self.max_requests <= 0:
            raise InvalidConfig("max_requests must be > 0")
        if self.max_keys is not None and self.max_keys <= 0:
            raise InvalidConfig("max_keys must be > 0")


@dataclass(frozen=True)
class DispatchConfig:
    """Complete dispatch configuration."""
    db_path: str = DEFAULT_DB_PATH
    pricing: PricingConfig = DEFAULT_PRICING
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


def load_dispatch_config(path: str) -> DispatchConfig:
    """Load and validate dispatch configuration from a YAML file.

    Unknown keys are rejected so a typo cannot silently fall back to a
    default price or limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated DispatchConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        InvalidConfig: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Dispatch config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return DispatchConfig()
    if not isinstance(raw_config, dict):
        raise InvalidConfig("Configuration must be a mapping")

    _reject_unknown(raw_config, {'database', 'pricing', 'rate_limit'}, "configuration")

    db_path = DEFAULT_DB_PATH
    if 'database' in raw_config:
        database = _section(raw_config, 'database')
        _reject_unknown(database, {'path'}, "database")
        if 'path' in database:
            if not isinstance(database['path'], str) or not database['path'].strip():
                raise InvalidConfig("'database.path' must be a non-empty string")
            db_path = database['path']

    pricing = DEFAULT_PRICING
    if 'pricing' in raw_config:
        pricing = _parse_pricing(_section(raw_config, 'pricing'))

    rate_limit = RateLimitConfig()
    if 'rate_limit' in raw_config:
        rate_limit = _parse_rate_limit(_section(raw_config, 'rate_limit'))

    return DispatchConfig(db_path=db_path, pricing=pricing, rate_limit=rate_limit)


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise InvalidConfig(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise InvalidConfig(f"Unknown keys in {path}: {unknown_keys}")


def _parse_amount(value: Any, path: str, upper: Optional[Decimal] = None) -> Decimal:
    """Parse a non-negative decimal amount, optionally bounded above."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidConfig(f"'{path}' must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidConfig(f"'{path}' must be a number")
    if not amount.is_finite() or amount < 0:
        raise InvalidConfig(f"'{path}' must be >= 0")
    if upper is not None and amount > upper:
        raise InvalidConfig(f"'{path}' must be <= {upper}")
    return amount


def _parse_pricing(data: Dict) -> PricingConfig:
    """Parse and validate the pricing section.

    Args:
        data: Pricing configuration data

    Returns:
        PricingConfig with any omitted value taken from the defaults

    Raises:
        InvalidConfig: If configuration is invalid
    """
    allowed_keys = {
        'base_fee', 'per_mile', 'service_fee', 'driver_payout_rate',
        'surcharges', 'discounts', 'service_fee_waived_tiers',
    }
    _reject_unknown(data, allowed_keys, "pricing")

    values: Dict[str, Any] = {}
    for key in ('base_fee', 'per_mile', 'service_fee'):
        if key in data:
            values[key] = _parse_amount(data[key], f"pricing.{key}")
    if 'driver_payout_rate' in data:
        values['driver_payout_rate'] = _parse_amount(
            data['driver_payout_rate'], "pricing.driver_payout_rate", upper=Decimal("1")
        )

    if 'surcharges' in data:
        surcharges = _section(data, 'surcharges')
        parsed = {}
        for name, amount in surcharges.items():
            try:
                service_type = ServiceType(str(name).upper())
            except ValueError:
                valid = [s.value for s in ServiceType]
                raise InvalidConfig(f"Unknown service type in pricing.surcharges: {name!r}; expected one of {valid}")
            parsed[service_type] = _parse_amount(amount, f"pricing.surcharges.{name}")
        values['surcharges'] = parsed

    if 'discounts' in data:
        discounts = _section(data, 'discounts')
        parsed = {}
        for name, rate in discounts.items():
            tier = _parse_tier(name, "pricing.discounts")
            parsed[tier] = _parse_amount(rate, f"pricing.discounts.{name}", upper=Decimal("1"))
        values['discounts'] = parsed

    if 'service_fee_waived_tiers' in data:
        tiers = data['service_fee_waived_tiers']
        if not isinstance(tiers, list):
            raise InvalidConfig("'pricing.service_fee_waived_tiers' must be a list")
        values['service_fee_waived_tiers'] = frozenset(
            _parse_tier(name, "pricing.service_fee_waived_tiers") for name in tiers
        )

    return PricingConfig(**values)


def _parse_tier(name: Any, path: str) -> MembershipTier:
    try:
        return MembershipTier(str(name).upper())
    except ValueError:
        valid = [t.value for t in MembershipTier]
        raise InvalidConfig(f"Unknown membership tier in {path}: {name!r}; expected one of {valid}")


def _parse_rate_limit(data: Dict) -> RateLimitConfig:
    """Parse and validate the rate_limit section."""
    _reject_unknown(data, {'interval_ms', 'max_requests', 'max_keys'}, "rate_limit")

    values: Dict[str, Any] = {}
    for key in ('interval_ms', 'max_requests'):
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidConfig(f"'rate_limit.{key}' must be an integer")
            values[key] = value
    if 'max_keys' in data:
        value = data['max_keys']
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise InvalidConfig("'rate_limit.max_keys' must be an integer or null")
        values['max_keys'] = value

    return RateLimitConfig(**values)
