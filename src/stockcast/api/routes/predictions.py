"""Prediction submission and query endpoints."""

from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from stockcast.api.deps import (
    get_admission,
    get_config,
    get_current_user_id,
    get_registry,
    get_scheduler,
)
from stockcast.config import AppConfig
from stockcast.errors import (
    ConflictError,
    RateLimitError,
    TransientSourceError,
    UnknownInstrumentError,
    ValidationError,
)
from stockcast.lifecycle.admission import AdmissionController
from stockcast.lifecycle.reputation import reputation_tier
from stockcast.lifecycle.scheduler import EvaluationScheduler
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)


class CreatePredictionRequest(BaseModel):
    instrumentId: str = Field(min_length=1, max_length=32)
    kind: str
    timeframe: str
    targetPrice: Decimal | None = None
    direction: str | None = None
    reasoning: str | None = None


router = APIRouter()


def _accuracy(correct: int, evaluated: int) -> float:
    return round(correct / evaluated * 100, 2) if evaluated else 0.0


@router.post("/predictions", status_code=201)
def create_prediction(
    body: CreatePredictionRequest,
    user_id: str = Depends(get_current_user_id),
    admission: AdmissionController = Depends(get_admission),
) -> dict:
    """Submit a prediction for the authenticated user."""
    try:
        prediction = admission.submit(
            user_id=user_id,
            instrument_id=body.instrumentId,
            kind=body.kind,
            timeframe=body.timeframe,
            target_price=body.targetPrice,
            direction=body.direction,
            reasoning=body.reasoning,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RateLimitError as e:
        return JSONResponse(
            status_code=429,
            content={"detail": str(e), "retryAfter": e.retry_after_seconds},
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except UnknownInstrumentError:
        raise HTTPException(status_code=404, detail="Stock not found")
    except TransientSourceError:
        logger.warning("Price unavailable while admitting %s for %s", body.instrumentId, user_id)
        raise HTTPException(status_code=503, detail="Price source unavailable, try again later")
    return prediction.to_dict()


@router.get("/predictions")
def list_predictions(
    instrumentId: str | None = Query(None),
    userId: str | None = Query(None),
    evaluated: bool | None = Query(None),
    limit: int = Query(100, ge=1, le=100),
    registry: Registry = Depends(get_registry),
) -> dict:
    """Predictions filtered by instrument, user and evaluation state, most recent first."""
    predictions = registry.get_predictions(
        instrument_id=instrumentId.upper() if instrumentId else None,
        user_id=userId,
        evaluated=evaluated,
        limit=limit,
    )
    return {"predictions": [p.to_dict() for p in predictions], "count": len(predictions)}


@router.get("/predictions/stats")
def prediction_stats(
    registry: Registry = Depends(get_registry),
    config: AppConfig = Depends(get_config),
) -> dict:
    """Platform totals, overall accuracy and the top predictors by reputation."""
    stats = registry.get_prediction_stats()
    leaders = registry.get_leaderboard(config.leaderboard_size)
    return {
        "totalPredictions": stats["total"],
        "evaluatedPredictions": stats["evaluated"],
        "correctPredictions": stats["correct"],
        "accuracy": _accuracy(stats["correct"], stats["evaluated"]),
        "topPredictors": [
            {
                "userId": r.user_id,
                "reputationScore": float(r.reputation_score),
                "accuracy": r.accuracy_pct,
                "totalPredictions": r.total_predictions,
                "tier": reputation_tier(r.reputation_score),
            }
            for r in leaders
        ],
    }


@router.get("/predictions/user/{user_id}")
def user_predictions(user_id: str, registry: Registry = Depends(get_registry)) -> dict:
    predictions = registry.get_predictions(user_id=user_id)
    evaluated = [p for p in predictions if p.is_evaluated]
    correct = sum(1 for p in evaluated if p.is_correct)
    return {
        "predictions": [p.to_dict() for p in predictions],
        "stats": {
            "total": len(predictions),
            "evaluated": len(evaluated),
            "correct": correct,
            "accuracy": _accuracy(correct, len(evaluated)),
        },
    }


@router.get("/predictions/{prediction_id}")
def get_prediction(prediction_id: int, registry: Registry = Depends(get_registry)) -> dict:
    prediction = registry.get_prediction(prediction_id)
    if prediction is None:
        raise HTTPException(status_code=404, detail="Prediction not found")
    return prediction.to_dict()


@router.post("/predictions/evaluate")
def trigger_evaluation(scheduler: EvaluationScheduler = Depends(get_scheduler)) -> dict:
    """Run one evaluation tick now instead of waiting for the background loop."""
    result = scheduler.run_once()
    return {
        "due": result.due,
        "evaluated": result.evaluated,
        "skipped": result.skipped,
        "lostRaces": result.lost_races,
        "reputationApplied": result.reputation_applied,
        "notificationsEmitted": result.notifications_emitted,
        "reconciled": result.reconciled,
    }
