# -*- coding: utf-8 -*-
"""
Fixed-point Quantities and Units of Measure

Decimal arithmetic for physical lot quantities so that long sequences of
splits and merges never drift the way binary floats do.

Features:
- Configurable fixed-point scale (default 3 places, i.e. grams per kg)
- ROUND_HALF_UP when normalising inputs
- Float inputs converted through ``str`` so 0.1 + 0.2 == 0.3
- Unit conversion between kilograms, metric tonnes and pounds
- Proportional allocation whose parts always sum exactly to the whole

Example:
    >>> from custody_ledger.quantity import Quantity
    >>> Quantity.of("1000", "kg").allocate([1, 1, 1])
    [Quantity(amount=Decimal('333.333'), ...), ..., Quantity(amount=Decimal('333.334'), ...)]
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Optional, Union

from custody_ledger.config import CustodyLedgerConfig, get_config
from custody_ledger.exceptions import ValidationError

Numeric = Union[Decimal, int, float, str]

ROUNDING = ROUND_HALF_UP


class UnitOfMeasure(str, Enum):
    """Mass units accepted by the ledger."""

    KILOGRAM = "kg"
    TONNE = "t"
    POUND = "lb"


# Kilograms per unit
_KG_FACTORS = {
    UnitOfMeasure.KILOGRAM: Decimal("1"),
    UnitOfMeasure.TONNE: Decimal("1000"),
    UnitOfMeasure.POUND: Decimal("0.45359237"),
}

_UNIT_ALIASES = {
    "kg": UnitOfMeasure.KILOGRAM,
    "kgs": UnitOfMeasure.KILOGRAM,
    "kilogram": UnitOfMeasure.KILOGRAM,
    "kilograms": UnitOfMeasure.KILOGRAM,
    "t": UnitOfMeasure.TONNE,
    "mt": UnitOfMeasure.TONNE,
    "tonne": UnitOfMeasure.TONNE,
    "tonnes": UnitOfMeasure.TONNE,
    "lb": UnitOfMeasure.POUND,
    "lbs": UnitOfMeasure.POUND,
    "pound": UnitOfMeasure.POUND,
    "pounds": UnitOfMeasure.POUND,
}


def scale(config: Optional[CustodyLedgerConfig] = None) -> Decimal:
    """Return the smallest representable quantity step, e.g. ``0.001``.

    Uses ``config`` when given, else the process-wide configuration.
    """
    places = (config or get_config()).quantity_decimal_places
    return Decimal(1).scaleb(-places)


def parse_unit(
    value: Union[str, UnitOfMeasure, None],
    config: Optional[CustodyLedgerConfig] = None,
) -> UnitOfMeasure:
    """Resolve a unit string or alias to a UnitOfMeasure.

    Args:
        value: Unit name (case-insensitive), alias, or None for the
            configured default unit.
        config: Configuration supplying the default unit.

    Raises:
        ValidationError: If the unit is unknown.
    """
    if isinstance(value, UnitOfMeasure):
        return value
    if value is None:
        value = (config or get_config()).default_unit
    unit = _UNIT_ALIASES.get(str(value).strip().lower())
    if unit is None:
        raise ValidationError(
            f"Unknown unit of measure '{value}'",
            invalid_fields={"unit": f"must be one of {sorted(_UNIT_ALIASES)}"},
        )
    return unit


def to_decimal(value: Any) -> Decimal:
    """Convert any numeric value to a finite Decimal without rounding.

    Raises:
        ValidationError: If the value is not numeric or not finite.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Quantity must be numeric, got {value!r}")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, int):
            result = Decimal(value)
        elif isinstance(value, float):
            result = Decimal(str(value))
        elif isinstance(value, str):
            result = Decimal(value.replace(",", "").strip())
        else:
            raise ValidationError(
                f"Cannot convert {type(value).__name__} to a quantity"
            )
    except InvalidOperation:
        raise ValidationError(f"Quantity '{value}' is not a number")
    if not result.is_finite():
        raise ValidationError(f"Quantity '{value}' is not finite")
    return result


def _to_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    try:
        return value.quantize(step, rounding=rounding)
    except InvalidOperation:
        raise ValidationError(
            f"Quantity {value} has too many digits for the ledger scale",
            invalid_fields={"quantity": "out of range"},
        )


def quantize(value: Any, config: Optional[CustodyLedgerConfig] = None) -> Decimal:
    """Normalise a numeric value to the ledger's fixed-point scale.

    Raises:
        ValidationError: If the value is not numeric or too large to be
            represented at the ledger scale.
    """
    return _to_step(to_decimal(value), scale(config), ROUNDING)


def convert(
    amount: Numeric,
    from_unit: Any,
    to_unit: Any,
    config: Optional[CustodyLedgerConfig] = None,
) -> Decimal:
    """Convert an amount between units, quantized to the ledger scale."""
    src = parse_unit(from_unit, config)
    dst = parse_unit(to_unit, config)
    value = to_decimal(amount)
    if src is dst:
        return quantize(value, config)
    return quantize(value * _KG_FACTORS[src] / _KG_FACTORS[dst], config)


def allocate(
    total: Numeric,
    weights: Iterable[Numeric],
    config: Optional[CustodyLedgerConfig] = None,
) -> List[Decimal]:
    """Divide ``total`` proportionally to ``weights`` at the ledger scale.

    Every part except the last is rounded down; the last part takes the
    remainder, so the parts sum to exactly ``quantize(total)``.

    Raises:
        ValidationError: If weights are empty, negative, or all zero.
    """
    weights = [to_decimal(w) for w in weights]
    if not weights:
        raise ValidationError("At least one share is required")
    if any(w < 0 for w in weights):
        raise ValidationError("Shares must be non-negative")
    weight_sum = sum(weights, Decimal(0))
    if weight_sum == 0:
        raise ValidationError("Shares must not all be zero")

    whole = quantize(total, config)
    step = scale(config)
    parts: List[Decimal] = []
    for weight in weights[:-1]:
        parts.append(_to_step(whole * weight / weight_sum, step, ROUND_DOWN))
    parts.append(whole - sum(parts, Decimal(0)))
    return parts


def partition(
    amounts: Iterable[Numeric],
    config: Optional[CustodyLedgerConfig] = None,
) -> List[Decimal]:
    """Bring explicit amounts to the ledger scale without drift.

    The parts sum to exactly ``quantize(sum(amounts))``: every part except
    the last is rounded down and the last takes the remainder.
    """
    exact = [to_decimal(a) for a in amounts]
    if not exact:
        raise ValidationError("At least one amount is required")
    step = scale(config)
    parts = [_to_step(a, step, ROUND_DOWN) for a in exact[:-1]]
    parts.append(quantize(sum(exact, Decimal(0)), config) - sum(parts, Decimal(0)))
    return parts


def ratio(numerator: Numeric, denominator: Numeric, places: int = 4) -> Decimal:
    """Return numerator / denominator at ``places`` decimals, 0 if undefined."""
    den = to_decimal(denominator)
    step = Decimal(1).scaleb(-places)
    if den == 0:
        return Decimal(0).quantize(step)
    return _to_step(to_decimal(numerator) / den, step, ROUNDING)


@dataclass(frozen=True)
class Quantity:
    """An amount of material in a unit of measure.

    Amounts are quantized on construction. Arithmetic between different
    units is refused; convert explicitly with :meth:`to`.
    """

    amount: Decimal
    unit: UnitOfMeasure = UnitOfMeasure.KILOGRAM

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", quantize(self.amount))
        object.__setattr__(self, "unit", parse_unit(self.unit))

    @classmethod
    def of(cls, amount: Any, unit: Any = None) -> Quantity:
        return cls(to_decimal(amount), parse_unit(unit))

    @classmethod
    def zero(cls, unit: Any = None) -> Quantity:
        return cls(Decimal(0), parse_unit(unit))

    def to(self, unit: Any) -> Quantity:
        """Return this quantity expressed in another unit."""
        target = parse_unit(unit)
        if target is self.unit:
            return self
        return Quantity(convert(self.amount, self.unit, target), target)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    def _check_unit(self, other: Quantity) -> None:
        if not isinstance(other, Quantity):
            raise ValidationError(
                f"Cannot combine Quantity with {type(other).__name__}"
            )
        if other.unit is not self.unit:
            raise ValidationError(
                f"Unit mismatch: {self.unit.value} vs {other.unit.value}"
            )

    def __add__(self, other: Quantity) -> Quantity:
        self._check_unit(other)
        return Quantity(self.amount + other.amount, self.unit)

    def __sub__(self, other: Quantity) -> Quantity:
        self._check_unit(other)
        return Quantity(self.amount - other.amount, self.unit)

    def __neg__(self) -> Quantity:
        return Quantity(-self.amount, self.unit)

    def __abs__(self) -> Quantity:
        return Quantity(abs(self.amount), self.unit)

    def __lt__(self, other: Quantity) -> bool:
        self._check_unit(other)
        return self.amount < other.amount

    def __le__(self, other: Quantity) -> bool:
        self._check_unit(other)
        return self.amount <= other.amount

    def __gt__(self, other: Quantity) -> bool:
        self._check_unit(other)
        return self.amount > other.amount

    def __ge__(self, other: Quantity) -> bool:
        self._check_unit(other)
        return self.amount >= other.amount

    def allocate(self, shares: Iterable[Numeric]) -> List[Quantity]:
        """Split this quantity proportionally to ``shares``.

        Every part except the last is rounded down to the ledger scale;
        the last part takes the remainder, so the parts always sum to
        exactly this quantity.

        Raises:
            ValidationError: If shares are empty, negative, or all zero.
        """
        return [Quantity(part, self.unit) for part in allocate(self.amount, shares)]

    def __str__(self) -> str:
        return f"{self.amount} {self.unit.value}"


def sum_quantities(
    quantities: Iterable[Quantity],
    unit: Optional[Any] = None,
) -> Quantity:
    """Sum quantities after converting each to ``unit`` (default config unit)."""
    target = parse_unit(unit)
    total = Quantity.zero(target)
    for q in quantities:
        total = total + q.to(target)
    return total


__all__ = [
    "UnitOfMeasure",
    "Quantity",
    "scale",
    "parse_unit",
    "to_decimal",
    "quantize",
    "convert",
    "allocate",
    "partition",
    "ratio",
    "sum_quantities",
]
