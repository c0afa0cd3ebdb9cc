from __future__ import annotations

from enum import StrEnum


class PredictionStatus(StrEnum):
    PENDING = "pending"
    EVALUATED = "evaluated"


VALID_TRANSITIONS: dict[PredictionStatus, set[PredictionStatus]] = {
    PredictionStatus.PENDING: {PredictionStatus.EVALUATED},
    PredictionStatus.EVALUATED: set(),
}


def validate_transition(current: PredictionStatus, target: PredictionStatus) -> bool:
    allowed = VALID_TRANSITIONS.get(current, set())
    return target in allowed
