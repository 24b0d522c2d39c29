"""Decimal <-> minor-unit conversion for the payment processor boundary."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    """Round a currency amount to cents."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount (e.g. 12.34) to integer cents (1234)."""
    if isinstance(amount, float):
        raise TypeError("Monetary amounts must be Decimal, not float")
    return int(quantize(amount) * 100)


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert integer cents back to a decimal amount."""
    return quantize(Decimal(amount_minor) / 100)
