# -*- coding: utf-8 -*-
"""Tests for fixed-point quantities and unit conversion."""

from decimal import Decimal

import pytest

from custody_ledger.config import CustodyLedgerConfig
from custody_ledger.exceptions import ValidationError
from custody_ledger.quantity import (
    Quantity,
    UnitOfMeasure,
    allocate,
    convert,
    parse_unit,
    partition,
    quantize,
    ratio,
    scale,
    sum_quantities,
    to_decimal,
)

pytestmark = pytest.mark.usefixtures("config")


# ==============================================================================
# Parsing and rounding
# ==============================================================================

class TestToDecimal:
    """Tests for numeric coercion."""

    def test_float_goes_through_str(self):
        """Floats are converted via their shortest repr."""
        assert to_decimal(0.1) == Decimal("0.1")

    def test_string_with_thousands_separator(self):
        assert to_decimal("1,250.5") == Decimal("1250.5")

    @pytest.mark.parametrize("value", [True, "abc", None, float("nan"), "inf"])
    def test_rejects_non_numeric_and_non_finite(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value)


class TestQuantize:
    """Tests for the ledger's fixed-point scale."""

    def test_three_decimal_places(self):
        assert quantize(12) == Decimal("12.000")

    def test_round_half_up(self):
        assert quantize("1.0005") == Decimal("1.001")
        assert quantize("-1.0005") == Decimal("-1.001")

    def test_explicit_config_scale(self):
        one_place = CustodyLedgerConfig(quantity_decimal_places=1)
        assert quantize("1.25", one_place) == Decimal("1.3")
        assert scale(one_place) == Decimal("0.1")

    @pytest.mark.parametrize("value", ["1e26", "123456789012345678901234567890"])
    def test_too_many_digits(self, value):
        with pytest.raises(ValidationError) as exc_info:
            quantize(value)
        assert "quantity" in exc_info.value.context["invalid_fields"]

    def test_convert_too_many_digits(self):
        with pytest.raises(ValidationError):
            convert("1e26", "t", "kg")


class TestUnits:
    """Tests for unit parsing and conversion."""

    def test_aliases(self):
        assert parse_unit("MT") is UnitOfMeasure.TONNE
        assert parse_unit(" Kilograms ") is UnitOfMeasure.KILOGRAM
        assert parse_unit("lbs") is UnitOfMeasure.POUND

    def test_none_uses_default_unit(self):
        assert parse_unit(None) is UnitOfMeasure.KILOGRAM
        tonnes = CustodyLedgerConfig(default_unit="t")
        assert parse_unit(None, tonnes) is UnitOfMeasure.TONNE

    def test_unknown_unit(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_unit("gallon")
        assert "unit" in exc_info.value.context["invalid_fields"]

    def test_convert_tonnes_to_kg(self):
        assert convert(1.5, "t", "kg") == Decimal("1500.000")

    def test_convert_pounds_to_kg(self):
        assert convert(1, "lb", "kg") == Decimal("0.454")

    def test_convert_same_unit_only_quantizes(self):
        assert convert("2.0004", "kg", "kg") == Decimal("2.000")


class TestRatio:
    """Tests for ratio()."""

    def test_ratio(self):
        assert ratio(200, 1000) == Decimal("0.2000")

    def test_zero_denominator_is_zero(self):
        assert ratio(5, 0) == Decimal("0.0000")


# ==============================================================================
# Quantity value object
# ==============================================================================

class TestQuantity:
    """Tests for the Quantity value object."""

    def test_quantized_on_construction(self):
        assert Quantity.of("10.12345", "kg").amount == Decimal("10.123")

    def test_arithmetic_same_unit(self):
        total = Quantity.of(600) + Quantity.of(400)
        assert total == Quantity.of(1000)
        assert (Quantity.of(600) - Quantity.of(700)).is_negative
        assert abs(-Quantity.of(5)) == Quantity.of(5)

    def test_arithmetic_across_units_is_refused(self):
        with pytest.raises(ValidationError):
            Quantity.of(1, "kg") + Quantity.of(1, "t")

    def test_comparison(self):
        assert Quantity.of(1) < Quantity.of(2)
        assert Quantity.zero().is_zero

    def test_explicit_conversion(self):
        assert Quantity.of(2, "t").to("kg") == Quantity.of(2000, "kg")

    def test_sum_quantities_converts(self):
        total = sum_quantities([Quantity.of(1, "t"), Quantity.of(500, "kg")], "kg")
        assert total == Quantity.of(1500, "kg")


class TestAllocate:
    """Tests for proportional allocation."""

    def test_parts_sum_exactly(self):
        parts = Quantity.of(1000).allocate([1, 1, 1])
        assert [p.amount for p in parts] == [
            Decimal("333.333"), Decimal("333.333"), Decimal("333.334"),
        ]
        assert sum(p.amount for p in parts) == Decimal("1000.000")

    def test_uneven_weights(self):
        parts = Quantity.of(10).allocate([0.6, 0.4])
        assert [p.amount for p in parts] == [Decimal("6.000"), Decimal("4.000")]

    @pytest.mark.parametrize("shares", [[], [-1, 2], [0, 0]])
    def test_invalid_shares(self, shares):
        with pytest.raises(ValidationError):
            Quantity.of(10).allocate(shares)

    def test_allocate_at_configured_scale(self):
        parts = allocate(10, [1, 1, 1], CustodyLedgerConfig(quantity_decimal_places=1))
        assert parts == [Decimal("3.3"), Decimal("3.3"), Decimal("3.4")]


class TestPartition:
    """Tests for bringing explicit amounts to the ledger scale."""

    def test_sub_scale_amounts_keep_their_sum(self):
        parts = partition(["333.3335", "666.6665"])
        assert parts == [Decimal("333.333"), Decimal("666.667")]
        assert sum(parts) == Decimal("1000.000")

    def test_on_scale_amounts_unchanged(self):
        assert partition([600, 400]) == [Decimal("600.000"), Decimal("400.000")]

    def test_configured_scale(self):
        parts = partition(["1.25", "1.25"], CustodyLedgerConfig(quantity_decimal_places=1))
        assert parts == [Decimal("1.2"), Decimal("1.3")]

    def test_empty(self):
        with pytest.raises(ValidationError):
            partition([])
