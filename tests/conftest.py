"""Shared fakes: an in-memory Registry, a controllable clock and a price source.

``InMemoryRegistry`` mirrors the guarantees the SQL gives the lifecycle code:
one pending prediction per (user, instrument) on insert, a compare-and-set
pending -> evaluated commit, and ledger/outbox rows unique per prediction.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from stockcast.errors import ConflictError, TransientSourceError, UnknownInstrumentError
from stockcast.models.lifecycle import PredictionStatus
from stockcast.models.prediction import OutcomeEvent, Prediction, PredictionDraft
from stockcast.models.reputation import UserReputation

T0 = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePriceSource:
    def __init__(self, prices: dict[str, Decimal] | None = None) -> None:
        self.prices: dict[str, Decimal] = dict(prices or {})
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def set(self, instrument_id: str, price: str | Decimal) -> None:
        self.prices[instrument_id] = Decimal(str(price))

    def current_price(self, instrument_id: str) -> Decimal:
        self.calls.append(instrument_id)
        if instrument_id in self.failing:
            raise TransientSourceError(f"{instrument_id} unavailable")
        if instrument_id not in self.prices:
            raise UnknownInstrumentError(instrument_id)
        return self.prices[instrument_id]


class InMemoryRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._notification_ids = itertools.count(1)
        self.predictions: dict[int, Prediction] = {}
        self.ledger: dict[int, Decimal] = {}
        self.reputation: dict[str, UserReputation] = {}
        self.notifications: dict[int, dict] = {}
        self.commit_calls = 0

    # predictions

    def create_prediction(self, draft: PredictionDraft) -> Prediction:
        with self._lock:
            for p in self.predictions.values():
                if (
                    p.user_id == draft.user_id
                    and p.instrument_id == draft.instrument_id
                    and p.status == PredictionStatus.PENDING
                ):
                    raise ConflictError(draft.user_id, draft.instrument_id)
            prediction = Prediction(
                id=next(self._ids),
                user_id=draft.user_id,
                instrument_id=draft.instrument_id,
                kind=draft.kind,
                timeframe=draft.timeframe,
                initial_price=draft.initial_price,
                target_date=draft.target_date,
                created_at=draft.created_at,
                target_price=draft.target_price,
                direction=draft.direction,
                reasoning=draft.reasoning,
                flagged=draft.flagged,
                flag_reason=draft.flag_reason,
            )
            self.predictions[prediction.id] = prediction
            return replace(prediction)

    def find_due(self, now: datetime, limit: int = 500, lease_seconds: int = 120) -> list[Prediction]:
        with self._lock:
            due = [
                replace(p)
                for p in self.predictions.values()
                if p.status == PredictionStatus.PENDING and p.target_date <= now
            ]
        due.sort(key=lambda p: (p.target_date, p.id))
        return due[:limit]

    def release_claims(self, prediction_ids: list[int]) -> int:
        return len(prediction_ids)

    def commit_evaluation(
        self, prediction_id: int, actual_price: Decimal, is_correct: bool, evaluated_at: datetime
    ) -> Prediction | None:
        with self._lock:
            self.commit_calls += 1
            current = self.predictions[prediction_id]
            if current.status != PredictionStatus.PENDING:
                return None
            evaluated = replace(
                current,
                status=PredictionStatus.EVALUATED,
                actual_price=actual_price,
                is_correct=is_correct,
                evaluated_at=evaluated_at,
            )
            self.predictions[prediction_id] = evaluated
            return replace(evaluated)

    def get_prediction(self, prediction_id: int) -> Prediction | None:
        p = self.predictions.get(prediction_id)
        return replace(p) if p else None

    def get_predictions(self, instrument_id=None, user_id=None, evaluated=None, limit=100):
        rows = [
            p for p in self.predictions.values()
            if (instrument_id is None or p.instrument_id == instrument_id)
            and (user_id is None or p.user_id == user_id)
            and (evaluated is None or p.is_evaluated == evaluated)
        ]
        rows.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return [replace(p) for p in rows[:limit]]

    def has_pending_prediction(self, user_id: str, instrument_id: str) -> bool:
        return any(
            p.user_id == user_id and p.instrument_id == instrument_id
            and p.status == PredictionStatus.PENDING
            for p in self.predictions.values()
        )

    def count_user_predictions_since(self, user_id: str, since: datetime):
        times = [p.created_at for p in self.predictions.values()
                 if p.user_id == user_id and p.created_at > since]
        return len(times), (min(times) if times else None)

    def count_instrument_predictions_since(self, instrument_id: str, since: datetime) -> int:
        return sum(1 for p in self.predictions.values()
                   if p.instrument_id == instrument_id and p.created_at > since)

    def get_prediction_stats(self) -> dict:
        evaluated = [p for p in self.predictions.values() if p.is_evaluated]
        return {
            "total": len(self.predictions),
            "evaluated": len(evaluated),
            "correct": sum(1 for p in evaluated if p.is_correct),
        }

    # reputation

    def apply_reputation(self, prediction_id: int, user_id: str, is_correct: bool, delta: Decimal) -> bool:
        with self._lock:
            if prediction_id in self.ledger:
                return False
            self.ledger[prediction_id] = delta
            rep = self.reputation.setdefault(user_id, UserReputation(user_id=user_id))
            rep.total_predictions += 1
            rep.accurate_predictions += int(is_correct)
            rep.reputation_score += delta
            return True

    def find_unapplied_reputation(self, limit: int = 500) -> list[Prediction]:
        return [replace(p) for p in self.predictions.values()
                if p.is_evaluated and p.id not in self.ledger][:limit]

    def get_reputation(self, user_id: str) -> UserReputation | None:
        return self.reputation.get(user_id)

    def get_leaderboard(self, limit: int = 10) -> list[UserReputation]:
        rows = sorted(self.reputation.values(), key=lambda r: r.reputation_score, reverse=True)
        return rows[:limit]

    # notifications

    def insert_notification(self, event: OutcomeEvent) -> int | None:
        with self._lock:
            if event.prediction_id in self.notifications:
                return None
            nid = next(self._notification_ids)
            self.notifications[event.prediction_id] = {
                "id": nid, "userId": event.user_id, "payload": event.to_dict(), "isRead": False,
            }
            return nid

    def find_unnotified(self, limit: int = 500) -> list[Prediction]:
        return [replace(p) for p in self.predictions.values()
                if p.is_evaluated and p.id not in self.notifications][:limit]

    def get_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[dict]:
        return [n for n in self.notifications.values()
                if n["userId"] == user_id and not (unread_only and n["isRead"])][:limit]

    def mark_notifications_read(self, user_id: str, ids: list[int] | None = None) -> int:
        count = 0
        for n in self.notifications.values():
            if n["userId"] == user_id and not n["isRead"] and (not ids or n["id"] in ids):
                n["isRead"] = True
                count += 1
        return count


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def prices() -> FakePriceSource:
    return FakePriceSource({
        "AAPL": Decimal("100"),
        "MSFT": Decimal("400"),
        "TSLA": Decimal("250"),
    })
