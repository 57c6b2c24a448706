from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
CENT = Decimal("0.01")

_NON_NUMERIC = re.compile(r"[^\d.,-]")
_LEADING_GROUP = re.compile(r"^\d{1,3}$")
_THOUSANDS_GROUP = re.compile(r"^\d{3}$")
_LOCALE_SEPARATORS = str.maketrans({",": ".", ".": ","})


def parse_amount(value: Decimal | int | float | str | None) -> Decimal:
    """Parse locale-formatted amount text into a Decimal.

    Accepts currency symbols, whitespace, a leading minus and either ``.`` or
    ``,`` as the decimal mark. Input that cannot be read yields zero; this
    function never raises, so it is safe to call on partially typed values.
    """
    if isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, (int, float)):
        return _to_decimal(str(value))
    if not isinstance(value, str):
        return ZERO

    cleaned = _NON_NUMERIC.sub("", value.strip())
    negative = cleaned.startswith("-")
    cleaned = cleaned.replace("-", "")
    if not cleaned:
        return ZERO

    has_dot = "." in cleaned
    has_comma = "," in cleaned
    if has_dot and has_comma:
        split_at = max(cleaned.rfind("."), cleaned.rfind(","))
        number = _place_decimal_point(cleaned, split_at)
    elif has_dot or has_comma:
        separator = "." if has_dot else ","
        if looks_like_thousands(cleaned, separator):
            number = cleaned.replace(separator, "")
        else:
            number = _place_decimal_point(cleaned, cleaned.rfind(separator))
    else:
        number = cleaned

    amount = _to_decimal(number)
    return -amount if negative else amount


def format_amount(value: Decimal | int | float | str | None) -> str:
    """Render an amount as ``1.234.567,89``; blank input renders as ``""``."""
    if value is None:
        return ""
    if isinstance(value, str) and not value.strip():
        return ""
    amount = parse_amount(value).quantize(CENT, rounding=ROUND_HALF_UP)
    if amount == ZERO:
        amount = abs(amount)
    return f"{amount:,.2f}".translate(_LOCALE_SEPARATORS)


def looks_like_thousands(text: str, separator: str) -> bool:
    groups = text.split(separator)
    if len(groups) <= 1:
        return False
    if not _LEADING_GROUP.match(groups[0]):
        return False
    return all(_THOUSANDS_GROUP.match(group) for group in groups[1:])


def _place_decimal_point(text: str, split_at: int) -> str:
    integer = re.sub(r"[.,]", "", text[:split_at])
    fraction = re.sub(r"[.,]", "", text[split_at + 1 :])
    if not fraction:
        return integer
    return f"{integer or '0'}.{fraction}"


def _to_decimal(text: str) -> Decimal:
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return ZERO
    return amount if amount.is_finite() else ZERO
