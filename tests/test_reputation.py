from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from stockcast.lifecycle.reputation import (
    FLAGGED_REWARD_FACTOR,
    REPUTATION_WEIGHTS,
    ReputationEngine,
    compute_delta,
    reputation_tier,
)
from stockcast.models.lifecycle import PredictionStatus
from stockcast.models.prediction import Direction, Prediction, PredictionKind, Timeframe
from stockcast.registry.queries import Registry

CREATED = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


def _evaluated(is_correct: bool = True, flagged: bool = False, timeframe: Timeframe = Timeframe.HOUR) -> Prediction:
    return Prediction(
        id=7,
        user_id="alice",
        instrument_id="AAPL",
        kind=PredictionKind.DIRECTION,
        direction=Direction.UP,
        timeframe=timeframe,
        initial_price=Decimal("100"),
        created_at=CREATED,
        target_date=CREATED + timeframe.duration,
        status=PredictionStatus.EVALUATED,
        actual_price=Decimal("103") if is_correct else Decimal("97"),
        is_correct=is_correct,
        evaluated_at=CREATED + timeframe.duration,
        flagged=flagged,
    )


class TestComputeDelta:
    def test_table_covers_every_timeframe(self) -> None:
        assert set(REPUTATION_WEIGHTS) == set(Timeframe)
        for reward, penalty in REPUTATION_WEIGHTS.values():
            assert reward > 0
            assert penalty < 0

    @pytest.mark.parametrize(
        "timeframe,reward,penalty",
        [
            (Timeframe.HOUR, "2.0", "-1.0"),
            (Timeframe.DAY, "3.0", "-1.5"),
            (Timeframe.WEEK, "4.0", "-2.0"),
            (Timeframe.MONTH, "5.0", "-2.5"),
        ],
    )
    def test_weights(self, timeframe: Timeframe, reward: str, penalty: str) -> None:
        assert compute_delta(True, timeframe, False) == Decimal(reward)
        assert compute_delta(False, timeframe, False) == Decimal(penalty)

    def test_flagged_reward_is_discounted(self) -> None:
        assert compute_delta(True, Timeframe.MONTH, True) == Decimal("5.0") * FLAGGED_REWARD_FACTOR
        assert compute_delta(True, Timeframe.MONTH, True) < compute_delta(True, Timeframe.MONTH, False)

    def test_flagged_penalty_applies_in_full(self) -> None:
        assert compute_delta(False, Timeframe.DAY, True) == Decimal("-1.5")

    def test_accepts_raw_timeframe_value(self) -> None:
        assert compute_delta(True, "1w", False) == Decimal("4.0")


class TestTiers:
    @pytest.mark.parametrize(
        "score,tier",
        [("0", "Novice"), ("24.9", "Novice"), ("25", "Analyst"), ("100", "Expert"),
         ("499", "Expert"), ("500", "Legend"), ("-3", "Novice")],
    )
    def test_thresholds(self, score: str, tier: str) -> None:
        assert reputation_tier(Decimal(score)) == tier


class TestReputationEngine:
    def test_apply_passes_delta(self) -> None:
        registry = MagicMock(spec=Registry)
        registry.apply_reputation.return_value = True
        engine = ReputationEngine(registry)

        assert engine.apply(_evaluated(is_correct=False, timeframe=Timeframe.WEEK)) is True
        registry.apply_reputation.assert_called_once_with(7, "alice", False, Decimal("-2.0"))

    def test_second_apply_is_noop(self, store) -> None:
        engine = ReputationEngine(store)
        prediction = _evaluated()
        store.predictions[prediction.id] = prediction

        assert engine.apply(prediction) is True
        assert engine.apply(prediction) is False

        rep = store.get_reputation("alice")
        assert rep.total_predictions == 1
        assert rep.accurate_predictions == 1
        assert rep.reputation_score == Decimal("2.0")

    def test_rejects_pending_prediction(self) -> None:
        engine = ReputationEngine(MagicMock(spec=Registry))
        pending = Prediction(
            id=1,
            user_id="alice",
            instrument_id="AAPL",
            kind=PredictionKind.DIRECTION,
            direction=Direction.UP,
            timeframe=Timeframe.HOUR,
            initial_price=Decimal("100"),
            created_at=CREATED,
            target_date=CREATED + timedelta(hours=1),
        )
        with pytest.raises(ValueError):
            engine.apply(pending)
