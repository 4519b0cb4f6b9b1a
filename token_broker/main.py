"""
FastAPI application entrypoint for the Google token broker.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from token_broker.api.routes import router as api_router
from token_broker.core.config import get_settings
from token_broker.core.logging import configure_logging
from token_broker.dependencies import shutdown_clients
from token_broker.services import get_metrics


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await shutdown_clients()


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Google Token Broker",
        version="0.1.0",
        description="Brokers short-lived Google OAuth access tokens for stores.",
        lifespan=lifespan,
    )
    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.allowed_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def record_http_metrics(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        get_metrics().observe_http_request(
            request.method,
            getattr(route, "path", request.url.path),
            response.status_code,
            time.perf_counter() - started,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()

__all__ = ["app", "create_app"]
