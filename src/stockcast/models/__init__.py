from __future__ import annotations

from stockcast.models.lifecycle import (
    VALID_TRANSITIONS,
    PredictionStatus,
    validate_transition,
)
from stockcast.models.prediction import (
    TIMEFRAME_DURATIONS,
    Direction,
    OutcomeEvent,
    Prediction,
    PredictionDraft,
    PredictionKind,
    Timeframe,
)
from stockcast.models.reputation import UserReputation

__all__ = [
    # prediction
    "Prediction",
    "PredictionDraft",
    "PredictionKind",
    "Direction",
    "Timeframe",
    "TIMEFRAME_DURATIONS",
    "OutcomeEvent",
    # lifecycle
    "PredictionStatus",
    "VALID_TRANSITIONS",
    "validate_transition",
    # reputation
    "UserReputation",
]
