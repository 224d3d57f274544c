"""FastAPI application main entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relayrace.core.config import settings
from relayrace.monitoring.logger import get_logger, setup_logging

from .dependencies import build_services
from .routes import health, race, relays

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Args:
        app: FastAPI application instance

    Yields:
        None
    """
    # Startup
    setup_logging()
    logger.info("Starting RelayRace API")
    services = build_services()
    app.state.services = services
    services.scheduler.start()
    logger.info(
        f"RelayRace API started | target={settings.backend_target} | "
        f"relays={'enabled' if services.registry.enabled else 'disabled (direct)'}"
    )

    yield

    # Shutdown
    logger.info("Shutting down RelayRace API")
    services.scheduler.stop()
    await services.engine.shutdown(timeout=settings.relay_provider_timeout)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="RelayRace API",
        description="Concurrent relay racing for ticket acquisition and quota submission",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(relays.router, prefix="/api/relays", tags=["Relays"])
    app.include_router(race.ticket_router, prefix="/ticket", tags=["Ticket"])
    app.include_router(race.submit_router, prefix="/submit", tags=["Submit"])

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs",
        }

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "relayrace.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
