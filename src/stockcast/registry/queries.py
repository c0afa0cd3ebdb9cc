from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal

from stockcast.errors import ConflictError
from stockcast.models.lifecycle import PredictionStatus
from stockcast.models.prediction import (
    Direction,
    OutcomeEvent,
    Prediction,
    PredictionDraft,
    PredictionKind,
    Timeframe,
)
from stockcast.models.reputation import UserReputation
from stockcast.registry.db import Database

logger = logging.getLogger(__name__)

_PREDICTION_COLUMNS = (
    "id, user_id, instrument_id, kind, target_price, direction, timeframe, "
    "target_date, initial_price, actual_price, status, is_correct, flagged, "
    "flag_reason, reasoning, created_at, evaluated_at"
)


class Registry:
    """Query layer bridging Python models and the stockcast schema.

    Every write is a single SQL statement, so each one is atomic on its own.
    The one-pending-per-(user, instrument) rule and the pending -> evaluated
    compare-and-set are enforced by the database, not by callers.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def create_prediction(self, draft: PredictionDraft) -> Prediction:
        """Insert a pending prediction.

        Raises ConflictError if the user already has a pending prediction for
        the instrument; the partial unique index decides, so two concurrent
        inserts cannot both succeed.
        """
        row = self._db.execute_one(
            "INSERT INTO stockcast.predictions "
            "(user_id, instrument_id, kind, target_price, direction, timeframe, "
            "target_date, initial_price, flagged, flag_reason, reasoning, created_at) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (user_id, instrument_id) WHERE status = 'pending' DO NOTHING "
            f"RETURNING {_PREDICTION_COLUMNS}",
            (
                draft.user_id,
                draft.instrument_id,
                draft.kind.value,
                draft.target_price,
                draft.direction.value if draft.direction else None,
                draft.timeframe.value,
                draft.target_date,
                draft.initial_price,
                draft.flagged,
                draft.flag_reason,
                draft.reasoning,
                draft.created_at,
            ),
        )
        if row is None:
            raise ConflictError(draft.user_id, draft.instrument_id)
        return self._row_to_prediction(row)

    def find_due(
        self, now: datetime, limit: int = 500, lease_seconds: int = 120
    ) -> list[Prediction]:
        """Claim pending predictions whose target_date <= now.

        Rows are leased with ``claimed_until`` under SKIP LOCKED so concurrent
        schedulers pick disjoint batches. An expired lease makes the row
        claimable again. The lease only spreads work; commit_evaluation is
        what guarantees a single transition.
        """
        rows = self._db.execute(
            "UPDATE stockcast.predictions SET claimed_until = %s "
            "WHERE id IN ("
            "  SELECT id FROM stockcast.predictions "
            "  WHERE status = 'pending' AND target_date <= %s "
            "  AND (claimed_until IS NULL OR claimed_until <= %s) "
            "  ORDER BY target_date LIMIT %s "
            "  FOR UPDATE SKIP LOCKED"
            f") RETURNING {_PREDICTION_COLUMNS}",
            (now + timedelta(seconds=lease_seconds), now, now, limit),
        )
        predictions = [self._row_to_prediction(r) for r in rows]
        predictions.sort(key=lambda p: (p.target_date, p.id or 0))
        return predictions

    def release_claims(self, prediction_ids: list[int]) -> int:
        """Drop leases on pending predictions that were skipped this tick."""
        if not prediction_ids:
            return 0
        rows = self._db.execute(
            "UPDATE stockcast.predictions SET claimed_until = NULL "
            "WHERE id = ANY(%s) AND status = 'pending' RETURNING id",
            (list(prediction_ids),),
        )
        return len(rows)

    def commit_evaluation(
        self,
        prediction_id: int,
        actual_price: Decimal,
        is_correct: bool,
        evaluated_at: datetime,
    ) -> Prediction | None:
        """Atomically move a prediction from pending to evaluated.

        Returns the evaluated prediction, or None if it was no longer pending
        (another evaluator won). Callers must not apply any effects on None.
        """
        row = self._db.execute_one(
            "UPDATE stockcast.predictions "
            "SET status = 'evaluated', actual_price = %s, is_correct = %s, "
            "evaluated_at = %s, claimed_until = NULL "
            "WHERE id = %s AND status = 'pending' "
            f"RETURNING {_PREDICTION_COLUMNS}",
            (actual_price, is_correct, evaluated_at, prediction_id),
        )
        if row is None:
            return None
        return self._row_to_prediction(row)

    def get_prediction(self, prediction_id: int) -> Prediction | None:
        row = self._db.execute_one(
            f"SELECT {_PREDICTION_COLUMNS} FROM stockcast.predictions WHERE id = %s",
            (prediction_id,),
        )
        return self._row_to_prediction(row) if row else None

    def get_predictions(
        self,
        instrument_id: str | None = None,
        user_id: str | None = None,
        evaluated: bool | None = None,
        limit: int = 100,
    ) -> list[Prediction]:
        """Get predictions with optional filters, most recent first."""
        conditions: list[str] = []
        params: list = []

        if instrument_id is not None:
            conditions.append("instrument_id = %s")
            params.append(instrument_id)
        if user_id is not None:
            conditions.append("user_id = %s")
            params.append(user_id)
        if evaluated is not None:
            conditions.append("status = %s")
            params.append(
                PredictionStatus.EVALUATED.value if evaluated else PredictionStatus.PENDING.value
            )

        where = ""
        if conditions:
            where = "WHERE " + " AND ".join(conditions)

        rows = self._db.execute(
            f"SELECT {_PREDICTION_COLUMNS} FROM stockcast.predictions {where} "
            f"ORDER BY created_at DESC, id DESC LIMIT %s",
            tuple(params + [limit]),
        )
        return [self._row_to_prediction(r) for r in rows]

    def has_pending_prediction(self, user_id: str, instrument_id: str) -> bool:
        rows = self._db.execute(
            "SELECT 1 AS found FROM stockcast.predictions "
            "WHERE user_id = %s AND instrument_id = %s AND status = 'pending' LIMIT 1",
            (user_id, instrument_id),
        )
        return bool(rows)

    def count_user_predictions_since(
        self, user_id: str, since: datetime
    ) -> tuple[int, datetime | None]:
        """Count a user's submissions after ``since``; also return the oldest one."""
        row = self._db.execute_one(
            "SELECT COUNT(*) AS n, MIN(created_at) AS oldest FROM stockcast.predictions "
            "WHERE user_id = %s AND created_at > %s",
            (user_id, since),
        )
        if not row:
            return 0, None
        return int(row["n"]), row["oldest"]

    def count_instrument_predictions_since(self, instrument_id: str, since: datetime) -> int:
        row = self._db.execute_one(
            "SELECT COUNT(*) AS n FROM stockcast.predictions "
            "WHERE instrument_id = %s AND created_at > %s",
            (instrument_id, since),
        )
        return int(row["n"]) if row else 0

    def count_pending(self, due_before: datetime | None = None) -> int:
        if due_before is None:
            row = self._db.execute_one(
                "SELECT COUNT(*) AS n FROM stockcast.predictions WHERE status = 'pending'"
            )
        else:
            row = self._db.execute_one(
                "SELECT COUNT(*) AS n FROM stockcast.predictions "
                "WHERE status = 'pending' AND target_date <= %s",
                (due_before,),
            )
        return int(row["n"]) if row else 0

    def get_prediction_stats(self) -> dict:
        """Platform-wide totals over all predictions."""
        row = self._db.execute_one(
            "SELECT COUNT(*) AS total, "
            "COUNT(*) FILTER (WHERE status = 'evaluated') AS evaluated, "
            "COUNT(*) FILTER (WHERE is_correct) AS correct "
            "FROM stockcast.predictions"
        )
        if not row:
            return {"total": 0, "evaluated": 0, "correct": 0}
        return {
            "total": int(row["total"] or 0),
            "evaluated": int(row["evaluated"] or 0),
            "correct": int(row["correct"] or 0),
        }

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    def apply_reputation(
        self, prediction_id: int, user_id: str, is_correct: bool, delta: Decimal
    ) -> bool:
        """Record a reputation delta exactly once per prediction.

        The ledger insert and the aggregate increment happen in one statement.
        Returns False (and changes nothing) if the prediction was already applied.
        """
        rows = self._db.execute(
            "WITH ledger AS ("
            "  INSERT INTO stockcast.reputation_ledger (prediction_id, user_id, is_correct, delta) "
            "  VALUES (%s, %s, %s, %s) "
            "  ON CONFLICT (prediction_id) DO NOTHING "
            "  RETURNING user_id, is_correct, delta"
            ") "
            "INSERT INTO stockcast.user_reputation "
            "(user_id, total_predictions, accurate_predictions, reputation_score, updated_at) "
            "SELECT user_id, 1, CASE WHEN is_correct THEN 1 ELSE 0 END, delta, NOW() FROM ledger "
            "ON CONFLICT (user_id) DO UPDATE SET "
            "  total_predictions = stockcast.user_reputation.total_predictions + 1, "
            "  accurate_predictions = stockcast.user_reputation.accurate_predictions "
            "    + EXCLUDED.accurate_predictions, "
            "  reputation_score = stockcast.user_reputation.reputation_score "
            "    + EXCLUDED.reputation_score, "
            "  updated_at = NOW() "
            "RETURNING user_id",
            (prediction_id, user_id, is_correct, delta),
        )
        return bool(rows)

    def find_unapplied_reputation(self, limit: int = 500) -> list[Prediction]:
        """Evaluated predictions with no reputation ledger entry."""
        rows = self._db.execute(
            f"SELECT {', '.join('p.' + c for c in _PREDICTION_COLUMNS.split(', '))} "
            "FROM stockcast.predictions p "
            "LEFT JOIN stockcast.reputation_ledger r ON r.prediction_id = p.id "
            "WHERE p.status = 'evaluated' AND r.prediction_id IS NULL "
            "ORDER BY p.evaluated_at LIMIT %s",
            (limit,),
        )
        return [self._row_to_prediction(r) for r in rows]

    def get_reputation(self, user_id: str) -> UserReputation | None:
        row = self._db.execute_one(
            "SELECT user_id, total_predictions, accurate_predictions, "
            "reputation_score, updated_at FROM stockcast.user_reputation WHERE user_id = %s",
            (user_id,),
        )
        return self._row_to_reputation(row) if row else None

    def get_leaderboard(self, limit: int = 10) -> list[UserReputation]:
        """Users ordered by reputation score, highest first."""
        rows = self._db.execute(
            "SELECT user_id, total_predictions, accurate_predictions, "
            "reputation_score, updated_at FROM stockcast.user_reputation "
            "ORDER BY reputation_score DESC, accurate_predictions DESC, user_id "
            "LIMIT %s",
            (limit,),
        )
        return [self._row_to_reputation(r) for r in rows]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def insert_notification(self, event: OutcomeEvent) -> int | None:
        """Store an outcome event once per prediction. Returns the new id, or None."""
        row = self._db.execute_one(
            "INSERT INTO stockcast.notifications (prediction_id, user_id, kind, payload) "
            "VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (prediction_id) DO NOTHING RETURNING id",
            (
                event.prediction_id,
                event.user_id,
                "PREDICTION_OUTCOME",
                json.dumps(event.to_dict()),
            ),
        )
        return row["id"] if row else None

    def find_unnotified(self, limit: int = 500) -> list[Prediction]:
        """Evaluated predictions with no outcome notification."""
        rows = self._db.execute(
            f"SELECT {', '.join('p.' + c for c in _PREDICTION_COLUMNS.split(', '))} "
            "FROM stockcast.predictions p "
            "LEFT JOIN stockcast.notifications n ON n.prediction_id = p.id "
            "WHERE p.status = 'evaluated' AND n.prediction_id IS NULL "
            "ORDER BY p.evaluated_at LIMIT %s",
            (limit,),
        )
        return [self._row_to_prediction(r) for r in rows]

    def get_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[dict]:
        unread = "AND is_read = FALSE " if unread_only else ""
        rows = self._db.execute(
            "SELECT id, prediction_id, kind, payload, is_read, created_at "
            "FROM stockcast.notifications "
            f"WHERE user_id = %s {unread}"
            "ORDER BY created_at DESC, id DESC LIMIT %s",
            (user_id, limit),
        )
        return [
            {
                "id": r["id"],
                "predictionId": r["prediction_id"],
                "kind": r["kind"],
                "payload": r["payload"] if isinstance(r["payload"], dict) else json.loads(r["payload"]),
                "isRead": r["is_read"],
                "createdAt": str(r["created_at"]),
            }
            for r in rows
        ]

    def mark_notifications_read(self, user_id: str, ids: list[int] | None = None) -> int:
        if ids:
            rows = self._db.execute(
                "UPDATE stockcast.notifications SET is_read = TRUE "
                "WHERE user_id = %s AND id = ANY(%s) AND is_read = FALSE RETURNING id",
                (user_id, list(ids)),
            )
        else:
            rows = self._db.execute(
                "UPDATE stockcast.notifications SET is_read = TRUE "
                "WHERE user_id = %s AND is_read = FALSE RETURNING id",
                (user_id,),
            )
        return len(rows)

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    def add_instrument(self, instrument_id: str, name: str = "") -> None:
        self._db.execute(
            "INSERT INTO stockcast.instruments (instrument_id, name) VALUES (%s, %s) "
            "ON CONFLICT (instrument_id) DO UPDATE SET name = EXCLUDED.name",
            (instrument_id, name),
        )

    def get_instrument_ids(self) -> list[str]:
        rows = self._db.execute(
            "SELECT instrument_id FROM stockcast.instruments ORDER BY instrument_id"
        )
        return [r["instrument_id"] for r in rows]

    def get_instrument_price(self, instrument_id: str) -> tuple[Decimal | None, datetime | None] | None:
        """Return (current_price, price_updated_at), or None for an unknown instrument."""
        row = self._db.execute_one(
            "SELECT current_price, price_updated_at FROM stockcast.instruments "
            "WHERE instrument_id = %s",
            (instrument_id,),
        )
        if row is None:
            return None
        price = Decimal(str(row["current_price"])) if row["current_price"] is not None else None
        return price, row["price_updated_at"]

    def upsert_instrument_prices(self, prices: dict[str, Decimal], as_of: datetime) -> int:
        query = """
            INSERT INTO stockcast.instruments (instrument_id, current_price, price_updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (instrument_id) DO UPDATE SET
                current_price = EXCLUDED.current_price,
                price_updated_at = EXCLUDED.price_updated_at
        """
        params = [(instrument_id, price, as_of) for instrument_id, price in prices.items()]
        return self._db.execute_many(query, params)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_prediction(r: dict) -> Prediction:
        return Prediction(
            id=r["id"],
            user_id=r["user_id"],
            instrument_id=r["instrument_id"],
            kind=PredictionKind(r["kind"]),
            target_price=Decimal(str(r["target_price"])) if r["target_price"] is not None else None,
            direction=Direction(r["direction"]) if r["direction"] else None,
            timeframe=Timeframe(r["timeframe"]),
            target_date=r["target_date"],
            initial_price=Decimal(str(r["initial_price"])),
            actual_price=Decimal(str(r["actual_price"])) if r["actual_price"] is not None else None,
            status=PredictionStatus(r["status"]),
            is_correct=r["is_correct"],
            flagged=bool(r["flagged"]),
            flag_reason=r["flag_reason"],
            reasoning=r["reasoning"] or "",
            created_at=r["created_at"],
            evaluated_at=r["evaluated_at"],
        )

    @staticmethod
    def _row_to_reputation(r: dict) -> UserReputation:
        return UserReputation(
            user_id=r["user_id"],
            total_predictions=int(r["total_predictions"]),
            accurate_predictions=int(r["accurate_predictions"]),
            reputation_score=Decimal(str(r["reputation_score"])),
            updated_at=r["updated_at"],
        )
