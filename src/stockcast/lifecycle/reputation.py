from __future__ import annotations

import logging
from decimal import Decimal

from stockcast.models.prediction import Prediction, Timeframe
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)

# (reward if correct, penalty if incorrect) per timeframe. Longer horizons pay more.
REPUTATION_WEIGHTS: dict[Timeframe, tuple[Decimal, Decimal]] = {
    Timeframe.HOUR: (Decimal("2.0"), Decimal("-1.0")),
    Timeframe.DAY: (Decimal("3.0"), Decimal("-1.5")),
    Timeframe.WEEK: (Decimal("4.0"), Decimal("-2.0")),
    Timeframe.MONTH: (Decimal("5.0"), Decimal("-2.5")),
}

# Rewards on flagged predictions are multiplied by this; penalties are not.
FLAGGED_REWARD_FACTOR = Decimal("0")

REPUTATION_TIERS: list[tuple[Decimal, str]] = [
    (Decimal("500"), "Legend"),
    (Decimal("100"), "Expert"),
    (Decimal("25"), "Analyst"),
]


def compute_delta(is_correct: bool, timeframe: Timeframe, flagged: bool) -> Decimal:
    """Deterministic reputation change for one evaluated prediction."""
    reward, penalty = REPUTATION_WEIGHTS[Timeframe(timeframe)]
    if not is_correct:
        return penalty
    if flagged:
        return reward * FLAGGED_REWARD_FACTOR
    return reward


def reputation_tier(score: Decimal) -> str:
    for floor, name in REPUTATION_TIERS:
        if score >= floor:
            return name
    return "Novice"


class ReputationEngine:
    """Applies reputation deltas, exactly once per prediction id."""

    def __init__(self, registry: Registry) -> None:
        self._registry = registry

    def apply(self, prediction: Prediction) -> bool:
        """Apply the delta for an evaluated prediction.

        Returns True if it was applied now, False if the prediction had
        already been applied earlier (safe to call again).
        """
        if not prediction.is_evaluated or prediction.id is None:
            raise ValueError("Reputation is only applied to evaluated predictions")

        delta = compute_delta(bool(prediction.is_correct), prediction.timeframe, prediction.flagged)
        applied = self._registry.apply_reputation(
            prediction.id, prediction.user_id, bool(prediction.is_correct), delta
        )
        if applied:
            logger.info(
                "Reputation %+s for user %s (prediction %d, %s)",
                delta, prediction.user_id, prediction.id,
                "correct" if prediction.is_correct else "incorrect",
            )
        else:
            logger.debug("Reputation for prediction %d already applied", prediction.id)
        return applied
