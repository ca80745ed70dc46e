from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional


ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

# Confidence scores are compared against thresholds at this precision
CONFIDENCE_QUANTUM = Decimal("0.000001")

# Residual left over by repeated division; anything at or below is treated as zero
DUST_TOLERANCE = Decimal("1e-18")


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Decimal:
    """
    Coerce a value to Decimal without going through binary floating point.

    Args:
        value: int, float, str or Decimal. Floats are converted via str().
        default: Returned when value is None. If omitted, None raises ValueError.

    Returns:
        Decimal value

    Raises:
        ValueError: If the value is None without a default, or is not numeric
    """
    if value is None:
        if default is None:
            raise ValueError("Cannot convert None to Decimal")
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert bool {value!r} to Decimal")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid decimal value: {value!r}")


def decimal_to_str(value: Optional[Decimal]) -> Optional[str]:
    """Plain (non-exponent) string form used when persisting decimals."""
    if value is None:
        return None
    normalized = value.normalize() if value != ZERO else ZERO
    return format(normalized, "f")


def quantize_confidence(value: Decimal) -> Decimal:
    return value.quantize(CONFIDENCE_QUANTUM, rounding=ROUND_HALF_UP)


def format_pct(value: Decimal) -> str:
    """Two decimal place percentage string, e.g. '0.10'."""
    return format(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP), "f")


def parse_datetime(value: Any) -> datetime:
    """Parse ISO-8601 strings (including a trailing 'Z') into datetimes."""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
