from __future__ import annotations

from stockcast.lifecycle.admission import (
    FLAG_REASON_PUMP,
    AdmissionController,
    AdmissionPolicy,
)
from stockcast.lifecycle.judging import judge, judge_direction, judge_price_target
from stockcast.lifecycle.notifications import NotificationDispatcher
from stockcast.lifecycle.reputation import (
    FLAGGED_REWARD_FACTOR,
    REPUTATION_WEIGHTS,
    ReputationEngine,
    compute_delta,
    reputation_tier,
)
from stockcast.lifecycle.scheduler import EvaluationScheduler, TickResult

__all__ = [
    "AdmissionController",
    "AdmissionPolicy",
    "EvaluationScheduler",
    "FLAGGED_REWARD_FACTOR",
    "FLAG_REASON_PUMP",
    "NotificationDispatcher",
    "REPUTATION_WEIGHTS",
    "ReputationEngine",
    "TickResult",
    "compute_delta",
    "judge",
    "judge_direction",
    "judge_price_target",
    "reputation_tier",
]
