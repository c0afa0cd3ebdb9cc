from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from stockcast.models.lifecycle import PredictionStatus

REASONING_MAX_LENGTH = 1000


class PredictionKind(StrEnum):
    PRICE = "price"
    DIRECTION = "direction"


class Direction(StrEnum):
    UP = "up"
    DOWN = "down"


class Timeframe(StrEnum):
    HOUR = "1h"
    DAY = "1d"
    WEEK = "1w"
    MONTH = "1m"

    @property
    def duration(self) -> timedelta:
        return TIMEFRAME_DURATIONS[self]


TIMEFRAME_DURATIONS: dict[Timeframe, timedelta] = {
    Timeframe.HOUR: timedelta(hours=1),
    Timeframe.DAY: timedelta(hours=24),
    Timeframe.WEEK: timedelta(days=7),
    Timeframe.MONTH: timedelta(days=30),
}


def check_payload(
    kind: PredictionKind, target_price: Decimal | None, direction: Direction | None
) -> None:
    """Raise ValueError unless exactly the payload field for ``kind`` is set."""
    if kind == PredictionKind.PRICE:
        if target_price is None or direction is not None:
            raise ValueError("price predictions carry target_price and no direction")
    elif kind == PredictionKind.DIRECTION:
        if direction is None or target_price is not None:
            raise ValueError("direction predictions carry direction and no target_price")
    else:
        raise ValueError(f"Unknown prediction kind: {kind}")


@dataclass(frozen=True)
class PredictionDraft:
    """An admitted prediction that has not been persisted yet."""

    user_id: str
    instrument_id: str
    kind: PredictionKind
    timeframe: Timeframe
    initial_price: Decimal
    created_at: datetime
    target_price: Decimal | None = None
    direction: Direction | None = None
    reasoning: str = ""
    flagged: bool = False
    flag_reason: str | None = None

    def __post_init__(self) -> None:
        check_payload(self.kind, self.target_price, self.direction)

    @property
    def target_date(self) -> datetime:
        return self.created_at + self.timeframe.duration


@dataclass
class Prediction:
    user_id: str
    instrument_id: str
    kind: PredictionKind
    timeframe: Timeframe
    initial_price: Decimal
    target_date: datetime
    created_at: datetime
    target_price: Decimal | None = None
    direction: Direction | None = None
    reasoning: str = ""
    status: PredictionStatus = PredictionStatus.PENDING
    actual_price: Decimal | None = None
    is_correct: bool | None = None
    evaluated_at: datetime | None = None
    flagged: bool = False
    flag_reason: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        check_payload(self.kind, self.target_price, self.direction)
        if self.status == PredictionStatus.PENDING:
            if self.is_correct is not None or self.actual_price is not None:
                raise ValueError("pending predictions have no outcome")
        elif self.is_correct is None or self.actual_price is None:
            raise ValueError("evaluated predictions require actual_price and is_correct")

    @property
    def is_evaluated(self) -> bool:
        return self.status == PredictionStatus.EVALUATED

    def to_dict(self) -> dict:
        """Serialise for API responses."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "instrumentId": self.instrument_id,
            "kind": self.kind.value,
            "targetPrice": float(self.target_price) if self.target_price is not None else None,
            "direction": self.direction.value if self.direction else None,
            "timeframe": self.timeframe.value,
            "targetDate": self.target_date.isoformat(),
            "initialPrice": float(self.initial_price),
            "actualPrice": float(self.actual_price) if self.actual_price is not None else None,
            "status": self.status.value,
            "isCorrect": self.is_correct,
            "flagged": self.flagged,
            "flagReason": self.flag_reason,
            "reasoning": self.reasoning,
            "createdAt": self.created_at.isoformat(),
            "evaluatedAt": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


@dataclass(frozen=True)
class OutcomeEvent:
    """Structured event handed to the notification channel after evaluation."""

    prediction_id: int
    user_id: str
    instrument_id: str
    is_correct: bool
    kind: PredictionKind
    timeframe: Timeframe

    @classmethod
    def from_prediction(cls, prediction: Prediction) -> OutcomeEvent:
        if not prediction.is_evaluated or prediction.id is None:
            raise ValueError("Outcome events are only produced for evaluated predictions")
        return cls(
            prediction_id=prediction.id,
            user_id=prediction.user_id,
            instrument_id=prediction.instrument_id,
            is_correct=bool(prediction.is_correct),
            kind=prediction.kind,
            timeframe=prediction.timeframe,
        )

    def to_dict(self) -> dict:
        return {
            "type": "prediction_outcome",
            "predictionId": self.prediction_id,
            "userId": self.user_id,
            "instrumentId": self.instrument_id,
            "isCorrect": self.is_correct,
            "kind": self.kind.value,
            "timeframe": self.timeframe.value,
        }
