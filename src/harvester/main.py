"""
FastAPI application for the harvester control surface.

Entry point for the API server. Configures middleware, exception
handlers, and the runtime shared by all endpoints.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from harvester.api.deps import RuntimeDep
from harvester.api.router import api_router
from harvester.core.config import Settings, get_settings
from harvester.core.exceptions import AppException
from harvester.core.logging import get_logger, setup_logging
from harvester.runtime import Runtime, build_runtime
from harvester.schemas.common import HealthResponse

logger = get_logger(__name__)


def create_application(
    settings: Settings | None = None,
    runtime: Runtime | None = None,
    create_schema: bool = False,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Application settings (defaults to environment settings)
        runtime: Pre-built runtime; when omitted the lifespan builds one and
            closes it on shutdown
        create_schema: Create tables on startup instead of relying on Alembic

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan handler.

        Builds the runtime, verifies the database connection and disposes
        of the engine on shutdown.
        """
        setup_logging(settings)
        logger.info(
            "Application starting",
            app_name=settings.app_name,
            version=settings.app_version,
            environment=settings.environment,
        )

        owned = runtime is None
        app.state.runtime = runtime or await build_runtime(settings, create_schema=create_schema)

        try:
            await app.state.runtime.store.ping()
            logger.info("Database connection verified")
        except SQLAlchemyError as e:
            logger.error("Database connection failed", error=str(e))
            raise

        yield

        logger.info("Application shutting down")
        if owned:
            await app.state.runtime.close()
            logger.info("Database connections closed")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Control surface for the professional license harvesting pipeline",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(runtime: RuntimeDep) -> HealthResponse:
        """Health check endpoint for load balancers and monitoring."""
        components: dict[str, dict] = {}
        try:
            await runtime.store.ping()
            components["database"] = {"status": "healthy"}
            components["queue"] = {"status": "healthy", "depth": await runtime.queue.depth()}
        except SQLAlchemyError as e:
            logger.error("Health check failed", error=str(e))
            components["database"] = {"status": "unhealthy", "error": type(e).__name__}

        healthy = all(c["status"] == "healthy" for c in components.values())
        return HealthResponse(
            status="healthy" if healthy else "unhealthy",
            version=settings.app_version,
            environment=settings.environment,
            components=components,
        )

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Handle custom application exceptions."""
        logger.warning(
            "Application exception",
            error_code=exc.error_code,
            message=exc.message,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception(
            "Unhandled exception",
            error=str(exc),
            path=request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                    "details": {} if not settings.debug else {"error": str(exc)},
                }
            },
        )

    return app


# Create application instance
app = create_application()
