"""Fixed-point money helpers.

All stored and compared amounts are integers in *minor units*.  One
currency unit (one euro) is 100 000 minor units (millicents), which keeps
per-token prices exact without floating point.  Conversion to decimal
strings happens only at presentation boundaries.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_HALF_EVEN, Decimal, InvalidOperation

MINOR_UNITS_PER_UNIT = 100_000


def to_minor(value: Decimal | str | int) -> int:
    """Convert a currency amount to minor units exactly.

    Accepts ``Decimal``, decimal strings (``"5.00"``) and integers (whole
    currency units).  Floats are rejected because their binary
    representation cannot be converted without drift.  Amounts carrying
    precision finer than one minor unit raise ``ValueError``.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Money amounts must be Decimal, str or int, got {type(value).__name__}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid money amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")

    scaled = amount * MINOR_UNITS_PER_UNIT
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value!r} is more precise than one minor unit")
    return int(scaled)


def ceil_to_minor(amount: Decimal) -> int:
    """Round a currency amount *up* to the next whole minor unit."""
    return int((amount * MINOR_UNITS_PER_UNIT).to_integral_value(rounding=ROUND_CEILING))


def from_minor(minor: int) -> Decimal:
    """Return the exact currency amount for *minor* units."""
    return Decimal(minor) / MINOR_UNITS_PER_UNIT


def format_amount(minor: int, places: int = 2) -> str:
    """Render *minor* units as a display string, e.g. ``40000`` -> ``"0.40"``."""
    quantum = Decimal(1).scaleb(-places)
    return str(from_minor(minor).quantize(quantum, rounding=ROUND_HALF_EVEN))
