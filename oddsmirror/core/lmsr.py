"""LMSR helpers for binary markets.

p = 1 / (1 + exp(-(q_yes - q_no) / b)); the quantity that prices one side at p
against an empty book on the other side is q = b * ln(p / (1 - p)).
"""
import math

PRICE_FLOOR = 0.01
PRICE_CEIL = 0.99


def clamp01(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


def quantity_for_price(price: float, liquidity_parameter: float) -> float:
    """Share quantity for one side; 0 outside (0.01, 0.99) where the log diverges."""
    if not (PRICE_FLOOR < price < PRICE_CEIL):
        return 0.0
    return liquidity_parameter * math.log(price / (1 - price))


def binary_quantities(yes_price: float, no_price: float, liquidity_parameter: float) -> tuple[float, float]:
    return (
        quantity_for_price(yes_price, liquidity_parameter),
        quantity_for_price(no_price, liquidity_parameter),
    )
