"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from atelier.api.routes import admin, jobs
from atelier.core import timezone  # noqa: F401
from atelier.core.config import Settings, configure_logging
from atelier.core.database import init_models, setup_db_session
from atelier.engine import build_engine

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, initialize database, build and start the dispatch engine
    - Shutdown: Stop engine loops and wait for in-flight triggers

    Engine loops automatically restart on failure.
    """
    # Load settings
    settings = Settings()  # type: ignore[call-arg]

    # Configure logging
    configure_logging(settings)

    # Setup database session factory and create tables
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    await init_models(session_factory)

    engine = build_engine(settings, session_factory)

    # Store in app.state for access in routes
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.engine = engine

    # Startup recovery runs inside start() before the loops
    await engine.start()

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    await engine.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Atelier Dispatch API",
        description="Image generation job dispatch and lifecycle tracking",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routers (prefixes set in router definitions)
    app.include_router(jobs.router)
    app.include_router(admin.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy", "workers_running": bool} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            # Test database connection with simple query
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy", "workers_running": app.state.engine.running}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()


def main() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = Settings()  # type: ignore[call-arg]
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
