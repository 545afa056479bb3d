"""
Custom Variant Pricing & Sizing
Input validation for customer-entered dimensions/material/price and
shipping-weight calculation for custom variants.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any
import logging

from settings import (
    MAX_PRICE,
    MAX_WEIGHT_GRAMS,
    MIN_PRICE,
    MIN_WEIGHT_GRAMS,
    PRICE_EPSILON,
    WEIGHT_PER_AREA,
)
from services.errors import ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class VariantSpec:
    """Validated custom configuration."""

    width: int
    height: int
    material: str
    price: Decimal

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def dedup_key(self) -> str:
        return f"{self.width}-{self.height}-{self.material}"

    @property
    def price_string(self) -> str:
        return format(self.price, ".2f")


def validate_price(raw: Any) -> Decimal:
    """Parse and bound-check a price, rounding half-up to 2 decimals.

    ``"19.999"`` becomes ``Decimal("20.00")``; ``"0"`` and ``"1000000"`` are
    rejected rather than clamped.
    """
    if raw is None or isinstance(raw, bool) or not str(raw).strip():
        raise ValidationError("price", "Price is required")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("price", "Invalid price format")
    if not value.is_finite():
        raise ValidationError("price", "Invalid price format")
    if value < MIN_PRICE:
        raise ValidationError("price", f"Price must be at least {MIN_PRICE}")
    if value > MAX_PRICE:
        raise ValidationError("price", f"Price must be at most {MAX_PRICE}")
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_dimension(field: str, raw: Any) -> int:
    """Parse a positive integer dimension (cm)."""
    if raw is None or isinstance(raw, bool):
        raise ValidationError(field, f"{field} is required")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            raise ValidationError(field, f"{field} is required")
        try:
            value = int(text)
        except ValueError:
            raise ValidationError(field, f"{field} must be a whole number")
    if value <= 0:
        raise ValidationError(field, f"{field} must be positive")
    return value


def validate_material(raw: Any) -> str:
    material = str(raw).strip() if raw is not None else ""
    if not material:
        raise ValidationError("material", "material is required")
    return material


def validate_variant_spec(width: Any, height: Any, material: Any, price: Any) -> VariantSpec:
    return VariantSpec(
        width=validate_dimension("width", width),
        height=validate_dimension("height", height),
        material=validate_material(material),
        price=validate_price(price),
    )


def calculate_weight(width: int, height: int, material: str) -> int:
    """Shipping weight in grams: area × per-material constant, clamped to [50, 50000]."""
    area = width * height
    per_area = WEIGHT_PER_AREA.get(material.lower(), WEIGHT_PER_AREA["default"])
    weight = int(Decimal(str(area * per_area)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(MIN_WEIGHT_GRAMS, min(MAX_WEIGHT_GRAMS, weight))


def parse_catalog_price(raw: Any) -> Decimal | None:
    """Catalog prices arrive as strings; blank/invalid values mean "not settled"."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def prices_match(catalog_price: Any, expected: Decimal) -> bool:
    actual = parse_catalog_price(catalog_price)
    if actual is None:
        return False
    return abs(actual - expected) < PRICE_EPSILON


def is_blank_price(raw: Any) -> bool:
    """True for missing or zero prices, which must never reach the storefront."""
    value = parse_catalog_price(raw)
    return value is None or value == 0
