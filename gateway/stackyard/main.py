"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from stackyard.api.routes import containers, health, images, networks, projects, system, volumes
from stackyard.api.websocket import logs
from stackyard.core.config import get_settings
from stackyard.core.dependencies import build_services
from stackyard.core.exceptions import (
    EngineError,
    EngineUnreachableError,
    InvalidProjectNameError,
    ManifestError,
    NotComposeManagedError,
    ProjectExistsError,
    ProjectNotFoundError,
    StackyardError,
)
from stackyard.services.engine import EngineClient

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Stackyard...")

    engine = EngineClient.from_settings(settings)
    app.state.services = build_services(settings, engine)
    logger.info(f"Managing projects in {settings.projects_dir}")

    yield

    logger.info("Shutting down Stackyard...")
    await engine.close()


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def engine_status_code(exc: EngineError) -> int:
    """HTTP status for an Engine failure; unknown or non-HTTP codes become 500."""
    if isinstance(exc, EngineUnreachableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    code: Optional[int] = exc.status_code
    if code is None or not 400 <= code < 600:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return code


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        code = engine_status_code(exc)
        if code >= 500:
            logger.error(f"Engine request failed on {request.url.path}: {exc}")
        return _error(code, exc.message)

    @app.exception_handler(InvalidProjectNameError)
    async def invalid_name_handler(request: Request, exc: InvalidProjectNameError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ManifestError)
    async def manifest_error_handler(request: Request, exc: ManifestError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(NotComposeManagedError)
    async def not_compose_managed_handler(request: Request, exc: NotComposeManagedError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ProjectNotFoundError)
    async def project_not_found_handler(request: Request, exc: ProjectNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(ProjectExistsError)
    async def project_exists_handler(request: Request, exc: ProjectExistsError):
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(StackyardError)
    async def stackyard_error_handler(request: Request, exc: StackyardError):
        logger.error(f"Request to {request.url.path} failed: {exc}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the application. Tests pass use_lifespan=False and set app.state themselves."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Docker Compose workload manager",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # Mount Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(containers.router, prefix="/api/v1/containers", tags=["Containers"])
    app.include_router(logs.router, prefix="/api/v1", tags=["WebSocket"])
    app.include_router(images.router, prefix="/api/v1/images", tags=["Images"])
    app.include_router(networks.router, prefix="/api/v1/networks", tags=["Networks"])
    app.include_router(volumes.router, prefix="/api/v1/volumes", tags=["Volumes"])
    app.include_router(projects.router, prefix="/api/v1/projects", tags=["Projects"])
    app.include_router(system.router, prefix="/api/v1/system", tags=["System"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "docs": "/docs",
        }

    @app.get("/api/v1")
    async def api_info():
        """API information endpoint."""
        return {
            "version": "v1",
            "endpoints": {
                "containers": "/api/v1/containers",
                "images": "/api/v1/images",
                "networks": "/api/v1/networks",
                "volumes": "/api/v1/volumes",
                "projects": "/api/v1/projects",
                "system": "/api/v1/system",
                "health": "/health",
                "metrics": "/metrics",
            },
        }

    return app


app = create_app()
