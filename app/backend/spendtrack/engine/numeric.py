"""Safe coercion of numeric-like values coming from storage or callers."""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
Q2 = Decimal("0.01")

# Largest integer a binary64 float represents exactly (2**53 - 1).
MAX_SAFE_INTEGER = Decimal(9007199254740991)


def _quantize(value: Decimal, rounding: str) -> Decimal:
    # Large magnitudes need more working digits than the default context.
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, value.adjusted() + 4)
        return value.quantize(Q2, rounding=rounding)


def _q2(value: Decimal) -> Decimal:
    return _quantize(value, ROUND_HALF_UP)


def _parse_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, int):
        parsed = Decimal(value)
    elif isinstance(value, float):
        parsed = Decimal(repr(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def is_finite_number(value: object) -> bool:
    return _parse_decimal(value) is not None


def to_safe_decimal(value: object, default: Decimal = ZERO) -> Decimal:
    """Coerce ``value`` into a finite Decimal, or return ``default``.

    Accepts Decimal, int, float and numeric strings. ``None``, booleans,
    unparseable text, NaN and infinities fall back to ``default``. Precision
    is preserved; this is the form used for money inside the engine.
    """

    parsed = _parse_decimal(value)
    return default if parsed is None else parsed


def to_safe_number(value: object, default: float = 0.0) -> float:
    """Coerce ``value`` into a finite float, or return ``default``.

    Decimals whose magnitude exceeds the exact-integer range of a float are
    truncated to two decimal places before conversion instead of raising.
    Never raises.
    """

    parsed = _parse_decimal(value)
    if parsed is None:
        return default
    if abs(parsed) > MAX_SAFE_INTEGER:
        logger.warning("Numeric value %s exceeds safe float range; truncating to 2 places", parsed)
        parsed = _quantize(parsed, ROUND_DOWN)
    try:
        number = float(parsed)
    except (OverflowError, ValueError):
        return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return number


def money(value: object) -> Decimal:
    """Guarded value rounded to cents, the form money leaves the engine in."""

    return _q2(to_safe_decimal(value))
