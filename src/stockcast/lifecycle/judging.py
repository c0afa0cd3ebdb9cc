"""Correctness rules applied when a prediction's target date has passed."""

from __future__ import annotations

from decimal import Decimal

from stockcast.models.prediction import Direction, Prediction, PredictionKind


def judge_direction(initial_price: Decimal, actual_price: Decimal, direction: Direction) -> bool:
    """Correct iff the price moved in the declared direction. Flat is incorrect."""
    change = actual_price - initial_price
    if direction == Direction.UP:
        return change > 0
    if direction == Direction.DOWN:
        return change < 0
    raise ValueError(f"Unknown direction: {direction}")


def judge_price_target(
    initial_price: Decimal, actual_price: Decimal, target_price: Decimal
) -> bool:
    """Target-crossing rule, evaluated at evaluation time.

    A target at or above the initial price must be reached from below; a
    target below it must be reached from above.
    """
    if target_price >= initial_price:
        return actual_price >= target_price
    return actual_price <= target_price


def judge(prediction: Prediction, actual_price: Decimal) -> bool:
    if prediction.kind == PredictionKind.DIRECTION:
        return judge_direction(prediction.initial_price, actual_price, prediction.direction)
    if prediction.kind == PredictionKind.PRICE:
        return judge_price_target(prediction.initial_price, actual_price, prediction.target_price)
    raise ValueError(f"Unknown prediction kind: {prediction.kind}")
