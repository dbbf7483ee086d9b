from decimal import Decimal

from .errors import AmountMismatch
from .money import CURRENCY_EPS, to_decimal


def assert_amount_matches_total(
    total: Decimal,
    amount: Decimal,
    detail: str = "payment amount does not match bill total",
):
    # Tendered amount must settle the frozen total exactly, modulo rounding.
    total = to_decimal(total)
    amount = to_decimal(amount)
    if amount < 0 or abs(amount - total) > CURRENCY_EPS:
        raise AmountMismatch(detail, expected=str(total), received=str(amount))
