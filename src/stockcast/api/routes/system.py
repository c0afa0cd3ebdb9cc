"""System health endpoints."""

from __future__ import annotations

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from stockcast.api.deps import app_state, get_registry
from stockcast.registry.queries import Registry

router = APIRouter()

_start_time = time.time()


@router.get("/system/health")
def health_check(registry: Registry = Depends(get_registry)) -> dict:
    """System health check.

    {status, database, pendingPredictions, duePredictions, scheduler,
    priceSource, priceSourceHealthy, priceSourceFailureRate, uptime}

    Sources without a circuit breaker always report healthy.
    """
    db_ok = registry._db.health_check()

    pending = due = None
    if db_ok:
        pending = registry.count_pending()
        due = registry.count_pending(due_before=datetime.now(UTC))

    source = app_state.price_source
    source_ok = bool(getattr(source, "is_healthy", True))

    config = app_state.config
    return {
        "status": "healthy" if db_ok and source_ok else "degraded",
        "database": db_ok,
        "pendingPredictions": pending,
        "duePredictions": due,
        "scheduler": bool(config and config.enable_scheduler and app_state.scheduler),
        "priceSource": config.price_source if config else None,
        "priceSourceHealthy": source_ok,
        "priceSourceFailureRate": getattr(source, "failure_rate", None),
        "uptime": int(time.time() - _start_time),
    }
