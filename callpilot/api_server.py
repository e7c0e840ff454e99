"""
FastAPI API Server.

Twilio voice and status webhooks plus the REST API for placing,
inspecting and controlling calls.

Start with:
    uvicorn callpilot.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from callpilot.api.calls import router as calls_router
from callpilot.api.deps import ServiceContainer, build_container
from callpilot.api.middleware import RateLimitMiddleware, RequestIdMiddleware
from callpilot.api.twilio import router as twilio_router
from callpilot.config import get_settings
from callpilot.logging_config import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

SERVICE_NAME = "callpilot"
VERSION = "0.1.0"


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Pass a prebuilt ``container`` to run against in-memory backends or
    fakes; otherwise services are wired from settings at startup.
    """
    settings = container.settings if container else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup and shutdown lifecycle hooks."""
        logger.info("api_server_starting", environment=settings.environment.value)
        services = container or await build_container(settings)
        app.state.services = services
        try:
            yield
        finally:
            await services.close()
            logger.info("api_server_stopping")

    app = FastAPI(
        title="CallPilot API",
        description="Autonomous phone agent: Twilio webhooks and call management",
        version=VERSION,
        lifespan=lifespan,
    )

    # Middleware (last added runs outermost)
    app.add_middleware(RateLimitMiddleware, max_requests=settings.rate_limit_per_minute)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(twilio_router)
    app.include_router(calls_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/", tags=["System"])
    async def root() -> dict[str, str]:
        """API root."""
        return {
            "service": "CallPilot",
            "version": VERSION,
            "docs": "/docs",
        }

    return app


app = create_app()
