from decimal import Decimal

import pytest

from backend.app.errors import InvalidPercent, InvalidQuantity
from backend.app.money import compute_totals, q_money, validate_percent, validate_quantity


def test_compute_totals_discount_before_tax():
    t = compute_totals(Decimal("400"), Decimal("10"), Decimal("5"))
    assert t == {
        "subtotal": Decimal("400.00"),
        "discount": Decimal("40.00"),
        "tax": Decimal("18.00"),
        "total": Decimal("378.00"),
    }


def test_compute_totals_rounds_each_component_half_up():
    t = compute_totals(Decimal("10.05"), Decimal("5"), Decimal("18"))
    # discount 0.5025 -> 0.50; tax (9.55 * 0.18 = 1.719) -> 1.72
    assert t["discount"] == Decimal("0.50")
    assert t["tax"] == Decimal("1.72")
    assert t["total"] == t["subtotal"] - t["discount"] + t["tax"] == Decimal("11.27")


def test_compute_totals_zero_percent_is_identity():
    t = compute_totals("99.99", 0, 0)
    assert t["total"] == Decimal("99.99")


def test_q_money_half_up():
    assert q_money("0.005") == Decimal("0.01")
    assert q_money("2.344") == Decimal("2.34")


@pytest.mark.parametrize("value", [-1, "100.01", "abc", "NaN"])
def test_validate_percent_rejects_out_of_range(value):
    with pytest.raises(InvalidPercent):
        validate_percent(value, "tax_percent")


def test_validate_percent_accepts_bounds():
    assert validate_percent(0, "d") == Decimal("0")
    assert validate_percent("100", "d") == Decimal("100")


def test_validate_percent_rounds_to_column_precision():
    assert str(validate_percent("10.555", "d")) == "10.56"
    assert str(validate_percent("7.5", "d")) == "7.50"


@pytest.mark.parametrize("value", [0, -2, 1.5, True, "3", None])
def test_validate_quantity_rejects_non_positive_ints(value):
    with pytest.raises(InvalidQuantity):
        validate_quantity(value)
