"""
LEDGER QUANTITY PRECISION

Ledger amounts are leave days (half-day granularity), comp-off days or
currency totals. All of them are held as Decimal inside the core and stored
as float in MongoDB.

Provides:
1. Decimal conversion without float noise
2. Rounding at the storage boundary only
3. Positive / non-negative validation
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union
import logging

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Number = Union[float, int, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        decimal_value = value
    elif isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        decimal_value = Decimal(str(value))
    elif isinstance(value, str):
        try:
            decimal_value = Decimal(value)
        except ArithmeticError:
            raise ValidationError(f"Not a number: {value!r}")
    else:
        raise ValidationError(f"Cannot convert {type(value)} to Decimal")

    # Balances and totals are always finite
    if not decimal_value.is_finite():
        raise ValidationError(f"Not a finite number: {value!r}")
    return decimal_value


def round_quantity(value: Number) -> Decimal:
    """Round to 2 decimal places. Call ONLY at the storage boundary."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Convert back to float for MongoDB storage (rounded first)."""
    return float(round_quantity(value))


def non_negative(value: Number) -> Decimal:
    """Clamp a value at zero."""
    decimal_value = to_decimal(value)
    return decimal_value if decimal_value > ZERO else ZERO


def validate_positive(value: Number, field_name: str) -> Decimal:
    """
    Validate that an amount is strictly positive (> 0).
    Returns the Decimal form so callers can keep using it.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= ZERO:
        raise ValidationError(f"'{field_name}' must be positive: {value}")
    return decimal_value


def validate_non_negative(value: Number, field_name: str) -> Decimal:
    """Validate that a stored balance component is not negative."""
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise ValidationError(f"'{field_name}' cannot be negative: {value}")
    return decimal_value
