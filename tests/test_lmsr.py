import math

import pytest

from oddsmirror.core.lmsr import binary_quantities, clamp01, quantity_for_price


def test_clamp01_bounds_and_garbage():
    assert clamp01(1.4) == 1.0
    assert clamp01(-0.2) == 0.0
    assert clamp01(0.37) == 0.37
    assert clamp01(float("nan")) == 0.0
    assert clamp01("oops") == 0.0


def test_quantity_matches_log_odds():
    q = quantity_for_price(0.6, 20000)
    assert q == pytest.approx(20000 * math.log(0.6 / 0.4))
    assert quantity_for_price(0.5, 20000) == 0.0


def test_quantity_is_zero_at_or_outside_bounds():
    for price in (0.0, 0.01, 0.99, 1.0, -0.5):
        assert quantity_for_price(price, 20000) == 0.0


def test_binary_quantities_mirror_complementary_prices():
    q_yes, q_no = binary_quantities(0.7, 0.3, 20000)
    assert q_yes == pytest.approx(20000 * math.log(0.7 / 0.3))
    assert q_no == pytest.approx(-q_yes)
    q_yes, q_no = binary_quantities(0.7, 0.0, 20000)
    assert q_yes > 0
    assert q_no == 0.0
