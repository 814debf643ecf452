"""
Package handling-cost calculation.

Range-based matching walks the tiers in the order they were stored, not
sorted: the first tier whose inclusive ``[min_weight, max_weight]`` range
contains the weight wins. When nothing matches, the tier with the largest
``max_weight`` acts as an open-ended overflow tier for heavier packages.
A weight below every tier's minimum costs nothing.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Sequence

from parcelvault.errors import InvalidPricingConfig, InvalidTier, InvalidWeight
from parcelvault.types import PricingType

ZERO = Decimal("0")

# Decimal places the SQL columns keep for weights and rates, and for prices.
WEIGHT_PLACES = 4
PRICE_PLACES = 2


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidOperation(repr(value))
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    else:
        result = Decimal(str(value).strip())
    if not result.is_finite():
        raise InvalidOperation(repr(value))
    return result


def _fits_places(value: Decimal, places: int) -> bool:
    try:
        return value == value.quantize(Decimal(1).scaleb(-places))
    except InvalidOperation:
        return False


def parse_weight(weight: Any) -> Decimal:
    """Return ``weight`` as a positive Decimal or raise InvalidWeight."""
    try:
        parsed = _to_decimal(weight)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidWeight(f"Weight must be a number, got {weight!r}") from None
    if parsed <= ZERO:
        raise InvalidWeight(f"Weight must be greater than 0, got {weight!r}")
    if not _fits_places(parsed, WEIGHT_PLACES):
        raise InvalidWeight(
            f"Weight supports at most {WEIGHT_PLACES} decimal places, got {weight!r}"
        )
    return parsed


def parse_rate(rate: Any) -> Optional[Decimal]:
    if rate is None or (isinstance(rate, str) and not rate.strip()):
        return None
    try:
        parsed = _to_decimal(rate)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPricingConfig(f"Per-pound rate must be a number, got {rate!r}") from None
    if parsed < ZERO:
        raise InvalidPricingConfig(f"Per-pound rate must not be negative, got {rate!r}")
    if not _fits_places(parsed, WEIGHT_PLACES):
        raise InvalidPricingConfig(
            f"Per-pound rate supports at most {WEIGHT_PLACES} decimal places, got {rate!r}"
        )
    return parsed


def _tier_field(tier: Any, name: str, camel: str) -> Any:
    if isinstance(tier, Mapping):
        return tier.get(name, tier.get(camel))
    return getattr(tier, name, None)


def parse_tier(tier: Any) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(min_weight, max_weight, price)`` for a record or mapping."""
    raw = (
        _tier_field(tier, "min_weight", "minWeight"),
        _tier_field(tier, "max_weight", "maxWeight"),
        _tier_field(tier, "price", "price"),
    )
    try:
        min_weight, max_weight, price = (_to_decimal(value) for value in raw)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidTier(f"Pricing tier has malformed values: {raw!r}") from None
    if min_weight < ZERO or max_weight < ZERO or price < ZERO:
        raise InvalidTier(f"Pricing tier values must not be negative: {raw!r}")
    if min_weight > max_weight:
        raise InvalidTier(
            f"Pricing tier min_weight {min_weight} exceeds max_weight {max_weight}"
        )
    if not (
        _fits_places(min_weight, WEIGHT_PLACES)
        and _fits_places(max_weight, WEIGHT_PLACES)
        and _fits_places(price, PRICE_PLACES)
    ):
        raise InvalidTier(f"Pricing tier has too many decimal places: {raw!r}")
    return min_weight, max_weight, price


def _range_cost(weight: Decimal, tiers: Sequence[tuple[Decimal, Decimal, Decimal]]) -> Decimal:
    if not tiers:
        return ZERO
    for min_weight, max_weight, price in tiers:
        if min_weight <= weight <= max_weight:
            return price
    # sorted() is stable, so the first-stored tier wins a max_weight tie.
    top_max, top_price = sorted(
        ((max_weight, price) for _, max_weight, price in tiers),
        key=lambda item: item[0],
        reverse=True,
    )[0]
    if weight > top_max:
        return top_price
    return ZERO


def calculate_cost(
    weight: Any,
    pricing_enabled: bool,
    pricing_type: PricingType | str | None,
    per_pound_rate: Any = None,
    tiers: Iterable[Any] = (),
) -> Decimal:
    """
    Compute the handling cost of one package.

    Args:
        weight: Package weight; must be a finite number greater than 0.
        pricing_enabled: When False the cost is always 0.
        pricing_type: ``per_pound`` or ``range_based``.
        per_pound_rate: Rate used for ``per_pound`` pricing; absent means 0.
        tiers: Range tiers in storage order (records or mappings).

    Raises:
        InvalidWeight: The weight is malformed or not positive.
        InvalidPricingConfig: The rate, a tier, or the pricing type is malformed.
    """
    parsed_weight = parse_weight(weight)
    if not pricing_enabled:
        return ZERO

    try:
        kind = PricingType(pricing_type or PricingType.PER_POUND)
    except ValueError:
        raise InvalidPricingConfig(f"Unknown pricing type {pricing_type!r}") from None

    if kind == PricingType.PER_POUND:
        rate = parse_rate(per_pound_rate)
        if rate is None:
            return ZERO
        return parsed_weight * rate

    return _range_cost(parsed_weight, [parse_tier(tier) for tier in tiers])


def cost_for_location(location: Any, tiers: Iterable[Any], weight: Any) -> Decimal:
    """Cost of ``weight`` under a Location record's pricing configuration."""
    return calculate_cost(
        weight,
        location.pricing_enabled,
        location.pricing_type,
        location.per_pound_rate,
        tiers,
    )
