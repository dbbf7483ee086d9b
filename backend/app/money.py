from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from .errors import InvalidPercent, InvalidQuantity

CURRENCY_Q = Decimal("0.01")
# Largest difference tolerated between a tendered amount and a bill total.
CURRENCY_EPS = Decimal("0.01")
HUNDRED = Decimal("100")
# Percent columns are numeric(5,2).
PERCENT_Q = Decimal("0.01")


def q_money(v) -> Decimal:
    return to_decimal(v).quantize(CURRENCY_Q, rounding=ROUND_HALF_UP)


def to_decimal(v) -> Decimal:
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v))
    except InvalidOperation:
        raise ValueError(f"not a number: {v!r}") from None


def validate_percent(value, field: str) -> Decimal:
    try:
        pct = to_decimal(value)
    except ValueError:
        raise InvalidPercent(f"{field} must be a number", field=field) from None
    if not pct.is_finite() or pct < 0 or pct > HUNDRED:
        raise InvalidPercent(f"{field} must be between 0 and 100", field=field)
    return pct.quantize(PERCENT_Q, rounding=ROUND_HALF_UP)


def validate_quantity(value) -> int:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidQuantity()
    return value


def compute_totals(subtotal, discount_percent, tax_percent) -> dict:
    """
    Freeze bill totals:
    - discount = subtotal * discount% / 100
    - tax      = (subtotal - discount) * tax% / 100
    - total    = subtotal - discount + tax
    Each component is rounded to currency precision before it feeds the next one,
    so `total == subtotal - discount + tax` holds exactly on the stored values.
    """
    sub = q_money(subtotal)
    discount = q_money(sub * to_decimal(discount_percent) / HUNDRED)
    tax = q_money((sub - discount) * to_decimal(tax_percent) / HUNDRED)
    total = sub - discount + tax
    return {"subtotal": sub, "discount": discount, "tax": tax, "total": total}
