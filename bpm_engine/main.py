"""
BPM Engine - HTTP host application

Exposes the embedded engine over a small REST surface. One runtime is
created per application and stored on ``app.state.runtime``.
"""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import Settings, get_settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .repositories.mongo_client import close_connection, health_check
from .runtime import EngineRuntime, create_runtime
from .utils.logger import setup_logging, get_logger

logger = get_logger(__name__)

VERSION = "1.0.0"


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        - Starts the runtime for the default organization
          (scheduler, local mirror load, remote sync, timer re-arming)

    Shutdown:
        - Stops the runtime and closes database connections
    """
    runtime: EngineRuntime = app.state.runtime
    logger.info("Starting BPM engine...")
    await runtime.start(runtime.settings.default_org_id)
    logger.info("Application started successfully")

    yield

    logger.info("Shutting down...")
    await runtime.stop()
    if runtime.settings.local_persistence_enabled:
        await close_connection()
    logger.info("Application shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[EngineRuntime] = None
) -> FastAPI:
    """Create the FastAPI application around a (new or given) runtime"""
    settings = settings or get_settings()
    setup_logging(settings)

    application = FastAPI(
        title="BPM Engine",
        description="Embedded business process engine with auto-transitions and offline sync",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )
    application.state.runtime = runtime or create_runtime(settings)

    _configure_middleware(application, settings)
    register_error_handlers(application)
    _configure_routes(application, settings)
    return application


def _configure_middleware(app: FastAPI, settings: Settings) -> None:
    # allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationIdMiddleware)


def _configure_routes(app: FastAPI, settings: Settings) -> None:
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health():
        """Engine, local mirror and remote sync status"""
        runtime: EngineRuntime = app.state.runtime
        mongo = await health_check(settings)
        sync = runtime.sync.get_sync_status()
        degraded = mongo.get("status") == "unhealthy" or (sync["remoteEnabled"] and not sync["remoteAvailable"])
        return {
            "status": "degraded" if degraded else "healthy",
            "version": VERSION,
            "environment": settings.environment,
            "orgId": runtime.org_id,
            "processes": runtime.store.count(),
            "scheduler": runtime.scheduler.is_running,
            "mongo": mongo,
            "sync": sync,
        }

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "name": "BPM Engine",
            "version": VERSION,
            "docs": "/api/docs" if settings.debug else None
        }


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
