"""Fixed-point helpers for meter values, volumes and money.

All arithmetic in the engine goes through ``Decimal``. Values coming from
JSON, CSV or the database are converted with :func:`to_decimal`, which routes
floats through ``str`` so that ``0.1`` stays ``Decimal("0.1")``.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Optional, Union

VOLUME_QUANT = Decimal("0.1")
MONEY_QUANT = Decimal("0.01")
PERCENT_QUANT = Decimal("0.01")

ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("booleans are not numeric values")
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a decimal number: {value!r}")


def quantize_volume(value: Number) -> Decimal:
    return to_decimal(value).quantize(VOLUME_QUANT, rounding=ROUND_HALF_UP)


def quantize_money(value: Number) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def quantize_percent(value: Number) -> Decimal:
    return to_decimal(value).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def mean(values: Iterable[Number]) -> Optional[Decimal]:
    """Arithmetic mean of ``values``, or ``None`` for an empty input."""
    items = [to_decimal(v) for v in values]
    if not items:
        return None
    return sum(items, ZERO) / Decimal(len(items))


def percent_change(current: Number, baseline: Optional[Number]) -> Decimal:
    """Percentage difference of ``current`` from ``baseline`` (2 dp).

    Returns zero when there is no baseline or the baseline is zero.
    """
    if baseline is None:
        return quantize_percent(ZERO)
    base = to_decimal(baseline)
    if base == ZERO:
        return quantize_percent(ZERO)
    return quantize_percent((to_decimal(current) - base) / base * HUNDRED)


def as_json_number(value: Optional[Decimal]) -> Optional[str]:
    """Serialize a decimal for JSON columns and responses without float loss."""
    if value is None:
        return None
    return format(value, "f")
