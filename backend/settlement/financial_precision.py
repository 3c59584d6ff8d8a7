"""
SETTLEMENT CORE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative / zero amounts)
4. Rounding at calculation boundary only

Booking and ledger amounts are stored as plain numbers (the reporting
consumers read them that way), so every calculation goes through Decimal
and is converted back with to_float() only when written or returned.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Optional
import logging

from bson import Decimal128

from settlement.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[float, int, str, Decimal, Decimal128]


def _parse_decimal(value: Numeric) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean {value!r} to an amount")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip().replace(',', ''))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}")
    raise ValidationError(f"Cannot convert {type(value).__name__} to an amount")


def to_decimal(value: Optional[Numeric]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    None is treated as zero (missing amounts on legacy documents).
    NaN and Infinity are rejected: JSON bodies can carry them.
    """
    if value is None:
        return ZERO
    result = _parse_decimal(value)
    if not result.is_finite():
        raise ValidationError(
            f"Amount must be a finite number: {value!r}",
            details={"value": str(value)}
        )
    return result


def round_financial(value: Optional[Numeric]) -> Decimal:
    """
    Round a value to 2 decimal places (half-up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    try:
        return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(
            f"Amount is out of range: {value!r}",
            details={"value": str(value)}
        )


def to_float(value: Optional[Numeric]) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    """Validate that a financial value is not negative."""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise ValidationError(
            f"Financial value '{field_name}' cannot be negative: {value}",
            details={"field": field_name, "value": str(value)}
        )
    return decimal_value


def validate_positive(value: Optional[Numeric], field_name: str) -> Decimal:
    """
    Validate that a financial value is strictly positive (> 0).
    Returns the value as a rounded Decimal.
    """
    if value is None:
        raise ValidationError(
            f"'{field_name}' is required",
            details={"field": field_name}
        )
    decimal_value = round_financial(value)
    if decimal_value <= ZERO:
        raise ValidationError(
            f"'{field_name}' must be greater than 0",
            details={"field": field_name, "value": str(value)}
        )
    return decimal_value


def safe_add(*values: Optional[Numeric]) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def safe_subtract(minuend: Optional[Numeric], *subtrahends: Optional[Numeric]) -> Decimal:
    """Safe subtraction: minuend - sum(subtrahends)"""
    result = to_decimal(minuend)
    for v in subtrahends:
        result -= to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount (unrounded).
    Example: calculate_percentage(1000, 10) = 100
    """
    return to_decimal(amount) * to_decimal(percentage) / HUNDRED


def calculate_commission(base: Optional[Numeric], rate: Optional[Numeric]) -> Decimal:
    """
    commission = round2(base * rate / 100)
    """
    return round_financial(calculate_percentage(to_decimal(base), to_decimal(rate)))
