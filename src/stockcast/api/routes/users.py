"""User reputation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from stockcast.api.deps import get_registry
from stockcast.lifecycle.reputation import reputation_tier
from stockcast.models.reputation import UserReputation
from stockcast.registry.queries import Registry

router = APIRouter()


def _reputation_dict(r: UserReputation) -> dict:
    return {
        "userId": r.user_id,
        "totalPredictions": r.total_predictions,
        "accuratePredictions": r.accurate_predictions,
        "accuracy": r.accuracy_pct,
        "reputationScore": float(r.reputation_score),
        "tier": reputation_tier(r.reputation_score),
        "updatedAt": r.updated_at.isoformat() if r.updated_at else None,
    }


@router.get("/users/leaderboard")
def leaderboard(
    limit: int = Query(10, ge=1, le=100),
    registry: Registry = Depends(get_registry),
) -> dict:
    rows = registry.get_leaderboard(limit)
    return {
        "leaderboard": [
            {"rank": i + 1, **_reputation_dict(r)} for i, r in enumerate(rows)
        ],
    }


@router.get("/users/{user_id}/reputation")
def user_reputation(user_id: str, registry: Registry = Depends(get_registry)) -> dict:
    """Reputation aggregate; users with no evaluated predictions yet get zeros."""
    reputation = registry.get_reputation(user_id)
    if reputation is None:
        reputation = UserReputation(user_id=user_id)
    return _reputation_dict(reputation)
