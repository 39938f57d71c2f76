"""Conversion of decimal prices into the integral minor units the gateway expects."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from coinpay.common.errors import ValidationError
from coinpay.common.state_machine import Currency

# Paise for INR, cents for USD. Neither has sub-unit gateway amounts.
MINOR_UNITS_PER_MAJOR: dict[Currency, int] = {
    Currency.INR: 100,
    Currency.USD: 100,
}


def parse_currency(value) -> Currency:
    if isinstance(value, Currency):
        return value
    try:
        return Currency(str(value).upper())
    except ValueError as exc:
        raise ValidationError(f"Unsupported currency: {value}") from exc


def to_decimal(amount) -> Decimal:
    """Coerce an int, float, str or Decimal amount into a finite, non-negative Decimal."""

    if isinstance(amount, bool):
        raise ValidationError("Amount must be a number")
    try:
        # Floats go through str() so 23.99 stays 23.99 rather than its binary expansion.
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Amount must be a number") from exc
    if not value.is_finite():
        raise ValidationError("Amount must be finite")
    if value < 0:
        raise ValidationError("Amount must not be negative")
    return value


def to_minor_units(amount, currency) -> int:
    """Return `amount` in minor units, rounding half away from zero."""

    value = to_decimal(amount)
    factor = MINOR_UNITS_PER_MAJOR[parse_currency(currency)]
    # ROUND_HALF_UP in `decimal` rounds ties away from zero.
    return int((value * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
