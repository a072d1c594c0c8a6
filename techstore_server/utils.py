"""Formatting helpers."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union


def format_currency(amount: Union[Decimal, int, str]) -> str:
    """Format an amount as Vietnamese dong, e.g. ``1.250.000 ₫``."""
    value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}{abs(value):,}".replace(",", ".") + " ₫"
