"""
Shora API - Main Application Entry Point

FastAPI application for council decision voting and lifecycle tracking.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shora import __version__
from shora.core.config import Settings, settings as default_settings
from shora.core.database import Database
from shora.core.events import EventPublisher, InMemoryEventPublisher
from shora.decisions.errors import DecisionError
from shora.decisions.repository import InMemoryDecisionRepository, SqlDecisionRepository
from shora.decisions.router import decision_error_handler, router as decisions_router, ws_router
from shora.decisions.services import DecisionLifecycleService

logger = logging.getLogger(__name__)


def build_service(
    config: Settings,
    repository: InMemoryDecisionRepository | SqlDecisionRepository,
    publisher: EventPublisher | InMemoryEventPublisher,
) -> DecisionLifecycleService:
    period = config.default_voting_period_hours
    return DecisionLifecycleService(
        repository,
        publisher=publisher,
        timeout=config.persistence_timeout_seconds,
        default_voting_period=timedelta(hours=period) if period else None,
        default_quorum=config.default_quorum,
    )


def create_app(
    config: Settings | None = None,
    service: DecisionLifecycleService | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use (default: environment settings)
        service: Pre-built engine; when given, no database or Redis
                 connection is opened at startup
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        async with AsyncExitStack() as stack:
            if service is not None:
                app.state.decision_service = service
                app.state.publisher = service.publisher or InMemoryEventPublisher()
            else:
                if config.storage_backend == "memory":
                    repository = InMemoryDecisionRepository()
                    publisher = InMemoryEventPublisher(config.event_channel_prefix)
                else:
                    database = await stack.enter_async_context(
                        Database(config.database_url, echo=config.debug, create_tables=config.debug)
                    )
                    repository = SqlDecisionRepository(database)
                    publisher = await stack.enter_async_context(
                        EventPublisher(
                            config.redis_url,
                            enabled=config.events_enabled,
                            channel_prefix=config.event_channel_prefix,
                        )
                    )
                app.state.publisher = publisher
                app.state.decision_service = build_service(config, repository, publisher)
                logger.info("Started with %s storage backend", config.storage_backend)
            yield

    app = FastAPI(
        title=config.app_name,
        description="Council decision voting and lifecycle API",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DecisionError, decision_error_handler)

    # Health Check
    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    # Include Routers
    app.include_router(decisions_router, prefix="/api/v1")
    app.include_router(ws_router)

    return app


app = create_app()
