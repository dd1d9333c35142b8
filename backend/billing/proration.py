from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from .calendar import days_in_month

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def remaining_days(start_date: date) -> int:
    return days_in_month(start_date) - start_date.day + 1


def prorated(monthly_price: Decimal, start_date: date) -> Decimal:
    """Charge for the part of ``start_date``'s month the member occupies.

    Both ends are inclusive, so a start on the first day bills the full price
    and a start on the last day bills one day's worth.
    """
    monthly_price = Decimal(monthly_price)
    if start_date.day == 1:
        return quantize_money(monthly_price)
    total_days = days_in_month(start_date)
    return quantize_money(monthly_price * remaining_days(start_date) / total_days)
