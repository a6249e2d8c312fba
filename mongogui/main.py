"""mongogui - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from mongogui.api import api_router
from mongogui.api.auth import router as auth_router
from mongogui.core import settings, setup_logging
from mongogui.core.errors import ErrorKind, ServiceError, error_envelope
from mongogui.core.logging import get_logger
from mongogui.middleware import (
    SecurityHeadersMiddleware,
    SessionAuthMiddleware,
    TokenAuthMiddleware,
)
from mongogui.services.manager import ServiceManager

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(settings.log_level, "structured" if settings.is_production else "dev")
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"Security configuration: {warning}")

    manager = ServiceManager.get_instance()
    manager.start_background_tasks()

    yield

    logger.info("Shutting down...")
    await manager.stop_background_tasks()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as the standard error envelope."""
    body = error_envelope(exc.code, exc.message)
    # Validation reasons are user-facing; anything else only in debug mode
    if exc.details is not None and (exc.kind is ErrorKind.VALIDATION or settings.debug):
        body["details"] = exc.details

    headers = None
    if exc.kind is ErrorKind.AUTHENTICATION and exc.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Authentication, session and connection security for the MongoDB GUI",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]

    # Starlette runs middleware in reverse order of registration: the token
    # check must run before the session check.
    app.add_middleware(SessionAuthMiddleware, require_session=False)
    app.add_middleware(TokenAuthMiddleware)

    app.add_middleware(SecurityHeadersMiddleware, hsts_max_age=settings.hsts_max_age)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on ALL responses, including 401s.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
            settings.session_header_name,
        ],
        expose_headers=["X-Request-ID", "X-Session-Warnings", "X-Session-Reauth-Required"],
        max_age=86400,
    )

    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


# Application instance
app = create_app()
