"""Test money rounding and discount rules."""
from decimal import Decimal

import pytest

from verticals.storefront.money import (
    D,
    FixedDiscount,
    PercentageDiscount,
    apply_discount,
    discount_with_minimum,
    evaluate_discount,
    percentage_of,
    round_money,
    rule_from_dict,
    rule_to_dict,
)


def test_round_money_half_up():
    assert round_money("2.675") == Decimal("2.68")
    assert round_money("1.005") == Decimal("1.01")
    assert round_money("1.004") == Decimal("1.00")


def test_coerce_float_without_noise():
    assert D(0.1) == Decimal("0.1")
    assert D(None) == Decimal("0")


def test_percentage_discount():
    assert evaluate_discount(PercentageDiscount(Decimal("10")), Decimal("55.00")) == Decimal("5.50")


def test_percentage_discount_cap():
    rule = PercentageDiscount(Decimal("50"), cap=Decimal("10"))
    assert evaluate_discount(rule, Decimal("100")) == Decimal("10.00")


def test_fixed_discount_clamped_to_base():
    assert evaluate_discount(FixedDiscount(Decimal("80")), Decimal("55")) == Decimal("55.00")


def test_no_rule_or_empty_base_is_zero():
    assert evaluate_discount(None, Decimal("10")) == Decimal("0")
    assert evaluate_discount(FixedDiscount(Decimal("5")), Decimal("0")) == Decimal("0")


def test_invalid_rules_rejected():
    with pytest.raises(ValueError):
        PercentageDiscount(Decimal("150"))
    with pytest.raises(ValueError):
        FixedDiscount(Decimal("-1"))


def test_minimum_not_reached():
    rule = PercentageDiscount(Decimal("10"))
    assert discount_with_minimum(rule, Decimal("39.99"), Decimal("40")) == Decimal("0")
    assert discount_with_minimum(rule, Decimal("40"), Decimal("40")) == Decimal("4.00")


def test_apply_discount():
    assert apply_discount(Decimal("19.99"), PercentageDiscount(Decimal("15"))) == Decimal("16.99")
    assert apply_discount(Decimal("5"), FixedDiscount(Decimal("8"))) == Decimal("0.00")


def test_percentage_of():
    assert percentage_of(20, 100) == 20
    assert percentage_of(1, 3) == 33
    assert percentage_of(2, 3) == 67
    assert percentage_of(1, 0) == 0


def test_rule_serialisation():
    rule = PercentageDiscount(Decimal("12.5"), cap=Decimal("20"))
    assert rule_from_dict(rule_to_dict(rule)) == rule
    assert rule_to_dict(FixedDiscount(Decimal("3"))) == {"type": "fixed", "value": "3"}
    assert rule_from_dict(None) is None
