"""FastAPI application factory with CORS, auth middleware, and lifespan management."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from stockcast.api.auth import decode_token, token_from_headers
from stockcast.api.deps import app_state
from stockcast.api.ws import NotificationHub
from stockcast.config import load_config
from stockcast.data.price_source import build_price_source
from stockcast.lifecycle.admission import AdmissionController, AdmissionPolicy
from stockcast.lifecycle.notifications import NotificationDispatcher
from stockcast.lifecycle.reputation import ReputationEngine
from stockcast.lifecycle.scheduler import EvaluationScheduler
from stockcast.registry.db import Database
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)

API_PREFIX = "/api/stockcast"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of the DB, lifecycle services and the scheduler loop."""
    config = load_config()

    # Database
    db = Database(config.db_dsn)
    db.connect()
    registry = Registry(db)

    hub = NotificationHub()
    hub.bind(asyncio.get_running_loop())

    price_source = build_price_source(config, registry)
    reputation = ReputationEngine(registry)
    dispatcher = NotificationDispatcher(registry, hub)
    admission = AdmissionController(
        registry, price_source, policy=AdmissionPolicy.from_config(config)
    )
    scheduler = EvaluationScheduler.from_config(
        config, registry, price_source, reputation, dispatcher
    )

    # Populate shared state
    app_state.config = config
    app_state.db = db
    app_state.registry = registry
    app_state.price_source = price_source
    app_state.admission = admission
    app_state.reputation = reputation
    app_state.dispatcher = dispatcher
    app_state.scheduler = scheduler
    app_state.hub = hub

    # Start background tasks
    _bg_tasks = []
    if config.enable_scheduler:
        _bg_tasks.append(asyncio.create_task(scheduler.run_forever()))
    logger.info(
        "API started: DB ready, price source %s, scheduler %s",
        config.price_source, "on" if config.enable_scheduler else "off",
    )
    yield

    # Cancel background tasks
    for task in _bg_tasks:
        task.cancel()
    if _bg_tasks:
        await asyncio.gather(*_bg_tasks, return_exceptions=True)

    db.close()
    logger.info("API shutdown complete")


async def invalid_payload_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters are a 400, like other payload rejections."""
    problems = [
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid payload: " + "; ".join(problems)},
    )


# Paths that don't require authentication
PUBLIC_PATHS = {
    f"{API_PREFIX}/system/health",
}

# Read-only prefixes open to anonymous GET requests
PUBLIC_READ_PREFIXES = (
    f"{API_PREFIX}/predictions",
    f"{API_PREFIX}/users",
)


class AuthMiddleware(BaseHTTPMiddleware):
    """Resolve the caller from a JWT and reject unauthenticated writes.

    The verified user id is stored on ``request.state.user_id``.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(API_PREFIX):
            return await call_next(request)

        # Skip auth entirely if no secret key is configured (dev mode)
        config = app_state.config
        if not config or not config.auth_secret_key:
            return await call_next(request)

        token = token_from_headers(
            request.headers.get("authorization"), request.cookies.get("session")
        )
        user_id = decode_token(token, config.auth_secret_key) if token else None
        if user_id:
            request.state.user_id = user_id
            return await call_next(request)

        if path in PUBLIC_PATHS:
            return await call_next(request)
        if request.method == "GET" and path.startswith(PUBLIC_READ_PREFIXES):
            return await call_next(request)

        return JSONResponse(
            status_code=401,
            content={"detail": "Not authenticated"},
        )


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        use_lifespan: If False, skip the production lifespan (useful for testing
            where deps are injected via app_state directly).
    """
    app = FastAPI(
        title="Stockcast API",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:4173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, invalid_payload_handler)

    # Auth middleware: must be added before routes
    app.add_middleware(AuthMiddleware)

    from stockcast.api import ws
    from stockcast.api.routes import notifications, predictions, system, users

    app.include_router(predictions.router, prefix=API_PREFIX, tags=["predictions"])
    app.include_router(users.router, prefix=API_PREFIX, tags=["users"])
    app.include_router(notifications.router, prefix=API_PREFIX, tags=["notifications"])
    app.include_router(system.router, prefix=API_PREFIX, tags=["system"])
    app.include_router(ws.router, prefix=API_PREFIX, tags=["websocket"])

    return app
