"""Utilities for working with monetary values in famledger."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise TypeError("Booleans are not valid amounts")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip().replace(",", ""))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    else:
        raise TypeError(f"Unsupported amount type: {type(value)!r}")

    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValueError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValueError("Amount must be greater than zero.")
    return amount


def to_cents(value: AmountLike) -> int:
    """Return ``value`` as an integer number of cents."""

    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``$12.34``)."""

    quantized = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if quantized < 0:
        return f"-${-quantized:,.2f}"
    return f"${quantized:,.2f}"


__all__ = ["CENT", "AmountLike", "format_currency", "from_cents", "require_positive", "to_cents", "to_decimal"]
