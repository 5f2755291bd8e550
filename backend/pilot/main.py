from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
from typing import Optional

from pilot.core.config import settings
from pilot.core.exceptions import (
    DockerUnavailableError,
    PilotError,
    ResourceNotFoundError,
    ValidationError,
)
from pilot.core.logging_config import logger
from pilot.core.middleware import RequestLoggingMiddleware
from pilot.api.v1.router import api_router
from pilot.modules.picker.picker_support import PICKER_STATIC_DIR
from pilot.services.service_container import ServiceContainer, create_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    services: ServiceContainer = app.state.services

    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Sandbox image: {settings.SANDBOX_IMAGE}")
    logger.info("=" * 60)

    if settings.SESSION_CLEANUP_ENABLED:
        await services.reaper.start()
    else:
        logger.info("Session reaper disabled")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    if settings.SESSION_CLEANUP_ENABLED:
        await services.reaper.stop()
    await services.orchestrator.shutdown()


def _status_for(exc: PilotError) -> int:
    if isinstance(exc, ResourceNotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, DockerUnavailableError):
        return 503
    return 500


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Disposable Docker sandboxes for cloning, running and instrumenting repositories",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        redirect_slashes=False  # Prevent 307 redirects that break CORS
    )
    app.state.services = services or create_services()

    # Middleware (last added runs first)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Response-Time"],
    )

    @app.exception_handler(PilotError)
    async def pilot_exception_handler(request: Request, exc: PilotError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Global exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "message": str(exc) if settings.DEBUG else "An error occurred"
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint"""
        services: ServiceContainer = app.state.services
        return {
            "status": "healthy",
            "app_name": settings.APP_NAME,
            "version": "1.0.0",
            "environment": settings.ENVIRONMENT,
            "sessions": len(services.session_store),
            "reaper": services.reaper.get_stats(),
        }

    app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")

    # Picker script requested by preview iframes
    app.mount("/picker", StaticFiles(directory=str(PICKER_STATIC_DIR)), name="picker")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pilot.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )
