"""Unit tests for minor-unit conversion at the processor boundary."""

from decimal import Decimal

import pytest

from marketplace.utils.money import from_minor_units, quantize, to_minor_units


def test_to_minor_units() -> None:
    assert to_minor_units(Decimal("12.34")) == 1234
    assert to_minor_units(Decimal("1000")) == 100000
    assert to_minor_units(Decimal("0.005")) == 1  # half-up


def test_from_minor_units() -> None:
    assert from_minor_units(1234) == Decimal("12.34")
    assert from_minor_units(5) == Decimal("0.05")


def test_float_amounts_rejected() -> None:
    with pytest.raises(TypeError):
        to_minor_units(12.34)  # type: ignore[arg-type]


def test_quantize_rounds_to_cents() -> None:
    assert quantize(Decimal("10.125")) == Decimal("10.13")
    assert str(quantize(Decimal("7"))) == "7.00"
