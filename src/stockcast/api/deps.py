"""Dependency injection for the FastAPI application."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from stockcast.config import AppConfig
from stockcast.data.price_source import PriceSource
from stockcast.lifecycle.admission import AdmissionController
from stockcast.lifecycle.notifications import NotificationDispatcher
from stockcast.lifecycle.reputation import ReputationEngine
from stockcast.lifecycle.scheduler import EvaluationScheduler
from stockcast.registry.db import Database
from stockcast.registry.queries import Registry

if TYPE_CHECKING:
    from stockcast.api.ws import NotificationHub


class AppState:
    """Holds shared application state initialised during lifespan."""

    def __init__(self) -> None:
        self.config: AppConfig | None = None
        self.db: Database | None = None
        self.registry: Registry | None = None
        self.price_source: PriceSource | None = None
        self.admission: AdmissionController | None = None
        self.reputation: ReputationEngine | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.scheduler: EvaluationScheduler | None = None
        self.hub: NotificationHub | None = None


# Singleton shared across the app
app_state = AppState()


def get_config() -> AppConfig:
    if app_state.config is None:
        raise RuntimeError("Config not initialised")
    return app_state.config


def get_registry() -> Registry:
    if app_state.registry is None:
        raise RuntimeError("Registry not initialised")
    return app_state.registry


def get_admission() -> AdmissionController:
    if app_state.admission is None:
        raise RuntimeError("AdmissionController not initialised")
    return app_state.admission


def get_scheduler() -> EvaluationScheduler:
    if app_state.scheduler is None:
        raise RuntimeError("EvaluationScheduler not initialised")
    return app_state.scheduler


def get_current_user_id(request: Request) -> str:
    """Identity set by AuthMiddleware, or the X-User-Id header in dev mode."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id

    config = app_state.config
    if not config or not config.auth_secret_key:
        header = request.headers.get("x-user-id", "").strip()
        if header:
            return header
    raise HTTPException(status_code=401, detail="Not authenticated")
