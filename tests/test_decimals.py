from decimal import Decimal

import pytest

from pumprecon.core.decimals import (
    as_json_number, mean, percent_change, quantize_money, quantize_volume, to_decimal,
)


def test_to_decimal_avoids_float_noise():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(" 12.50 ") == Decimal("12.50")
    assert to_decimal(7) == Decimal("7")


@pytest.mark.parametrize("bad", ["", "ten", True])
def test_to_decimal_rejects_non_numbers(bad):
    with pytest.raises((TypeError, ValueError)):
        to_decimal(bad)


def test_quantizers_round_half_up():
    assert quantize_volume("0.05") == Decimal("0.1")
    assert quantize_volume("12.34") == Decimal("12.3")
    assert quantize_money("2.005") == Decimal("2.01")
    assert quantize_money("-2.005") == Decimal("-2.01")


def test_mean():
    assert mean([]) is None
    assert mean(["1", 2, Decimal("3")]) == Decimal("2")


def test_percent_change():
    assert percent_change(150, None) == Decimal("0.00")
    assert percent_change(150, 0) == Decimal("0.00")
    assert percent_change(150, 100) == Decimal("50.00")
    assert percent_change(1, 3) == Decimal("-66.67")


def test_as_json_number():
    assert as_json_number(None) is None
    assert as_json_number(Decimal("1E+3")) == "1000"
    assert as_json_number(Decimal("2.50")) == "2.50"
